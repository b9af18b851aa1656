"""Domain exceptions for the practice backend.

呼び出し側（将来の API 層やバッチ）が `code` で分岐できるよう、
すべての例外は PracticeError を基底に持ち、補足情報を `details` に保持する。
"""

from __future__ import annotations

from typing import Any


class PracticeError(Exception):
    """Base exception for all practice backend errors."""

    code = "PRACTICE_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ValidationError(PracticeError):
    """入力値が業務ルールに反する（試行回数の範囲外など）。"""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None, value: Any = None) -> None:
        details: dict[str, Any] = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = value
        super().__init__(message, details)
        self.field = field
        self.value = value


class NotFoundError(PracticeError):
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any) -> None:
        super().__init__(
            f"{resource} {identifier} not found",
            {"resource": resource, "identifier": identifier},
        )
        self.resource = resource
        self.identifier = identifier


class PracticeEngineError(PracticeError):
    """セッションを開始できない等、練習エンジン全体の失敗。

    `suggestions` は利用者へ提示する次のアクション候補。
    """

    code = "PRACTICE_ENGINE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        suggestions: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.suggestions = list(suggestions or [])


class ConceptSelectionError(PracticeError):
    code = "CONCEPT_SELECTION_ERROR"


class SRSCalculationError(PracticeError):
    code = "SRS_CALCULATION_ERROR"


class LLMServiceError(PracticeError):
    code = "LLM_SERVICE_ERROR"


class ConceptExtractionError(PracticeError):
    code = "CONCEPT_EXTRACTION_ERROR"


class QuestionBankWriteError(PracticeError):
    code = "QUESTION_BANK_WRITE_ERROR"
