"""回答採点フロー。

選択式・活用表など答えが一意に決まる問題はローカルで決定的に判定し、
それ以外（翻訳・穴埋め・自由回答など）は LLM に採点させる。どちらの経路でも
保存済みの正答を書き換えることはない。
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

from ..errors import LLMServiceError, ValidationError
from ..logging import logger
from ..models.common import MistakeType, QuestionType
from ..models.practice import ValidationResult
from ..models.question import PENDING_CORRECT_ANSWER, QuestionBankItem
from ..models.session import MAX_ATTEMPTS
from ..observability import span
from ..providers import get_llm_provider
from ..store.common import clamp_unit
from .llm_json import parse_json_object

CLIENT_VALIDATED_TYPES: frozenset[QuestionType] = frozenset(
    {
        QuestionType.vocab_choice,
        QuestionType.multi_select,
        QuestionType.visual_vocabulary,
        QuestionType.audio_comprehension,
        QuestionType.conjugation_table,
        QuestionType.aspect_pairs,
        QuestionType.diminutive_forms,
    }
)

CONJUGATION_FORM_LABELS = ("ja", "ty", "on/ona/ono", "my", "wy", "oni/one")


def _as_list(answer: str | Sequence[str]) -> list[str]:
    if isinstance(answer, str):
        return [part.strip() for part in answer.split(",") if part.strip()]
    return [str(part).strip() for part in answer]


def _as_text(answer: str | Sequence[str]) -> str:
    if isinstance(answer, str):
        return answer
    return ", ".join(str(part) for part in answer)


def _revealed(correct_answer: str, attempt_number: int) -> str:
    return correct_answer if attempt_number >= MAX_ATTEMPTS else ""


def _validate_single_choice(user_answer: str, correct_answer: str, attempt: int) -> ValidationResult:
    is_correct = user_answer.strip().lower() == correct_answer.strip().lower()
    if is_correct:
        feedback = "Correct! Well done."
    elif attempt < MAX_ATTEMPTS:
        feedback = "That's not correct. Try again and consider all the options carefully."
    else:
        feedback = f"Incorrect. The correct answer is: {correct_answer}"
    return ValidationResult(
        is_correct=is_correct,
        feedback=feedback,
        correct_answer=_revealed(correct_answer, attempt),
        confidence=1.0,
    )


def _validate_multi_select(
    user_answers: list[str], correct_answer: str, attempt: int
) -> ValidationResult:
    correct_answers = [ans.strip() for ans in correct_answer.split(",")]
    is_correct = sorted(a.lower() for a in user_answers) == sorted(
        a.lower() for a in correct_answers
    )
    correct_count, user_count = len(correct_answers), len(user_answers)
    if is_correct:
        feedback = "Correct! You selected all the right options."
    elif attempt < MAX_ATTEMPTS:
        if user_count < correct_count:
            feedback = (
                f"You need to select {correct_count} options. You selected {user_count}. Try again."
            )
        elif user_count > correct_count:
            feedback = f"You selected too many options. Only {correct_count} are correct. Try again."
        else:
            feedback = (
                f"You selected the right number of options ({correct_count}), "
                "but some are incorrect. Try again."
            )
    else:
        feedback = f"Incorrect. The correct answers are: {', '.join(correct_answers)}"
    return ValidationResult(
        is_correct=is_correct,
        feedback=feedback,
        correct_answer=_revealed(", ".join(correct_answers), attempt),
        confidence=1.0,
    )


def _validate_conjugation_table(
    user_answers: list[str], correct_answer: str, attempt: int
) -> ValidationResult:
    correct_forms = [ans.strip() for ans in correct_answer.split(",")]
    if len(correct_forms) != len(CONJUGATION_FORM_LABELS):
        raise ValidationError(
            "Conjugation table must have exactly 6 forms",
            field="correct_answer",
            value=correct_answer,
        )
    if len(user_answers) != len(CONJUGATION_FORM_LABELS):
        return ValidationResult(
            is_correct=False,
            feedback="Please fill in all 6 conjugation forms.",
            correct_answer=_revealed(correct_answer, attempt),
            confidence=1.0,
        )
    wrong = [
        idx
        for idx, (given, expected) in enumerate(zip(user_answers, correct_forms))
        if given.strip().lower() != expected.lower()
    ]
    labels = [CONJUGATION_FORM_LABELS[idx] for idx in wrong]
    if not wrong:
        feedback = "Perfect! All conjugation forms are correct."
    elif attempt < MAX_ATTEMPTS:
        if len(wrong) == 1:
            feedback = f"Almost there! Check the {labels[0]} form."
        elif len(wrong) <= 3:
            feedback = f"Check these forms: {', '.join(labels)}. Try again."
        else:
            feedback = "Several forms need correction. Review the conjugation pattern and try again."
    elif len(wrong) == 1:
        feedback = f"Almost there! Check the {labels[0]} form: {correct_forms[wrong[0]]}"
    else:
        feedback = f"Check these forms: {', '.join(labels)}. Correct answers: {', '.join(correct_forms)}"
    return ValidationResult(
        is_correct=not wrong,
        feedback=feedback,
        correct_answer=_revealed(correct_answer, attempt),
        confidence=1.0,
    )


def _validate_exact_match(user_answer: str, correct_answer: str, attempt: int) -> ValidationResult:
    is_correct = user_answer.strip().lower() == correct_answer.strip().lower()
    if is_correct:
        feedback = "Perfect! Exact match."
    elif attempt < MAX_ATTEMPTS:
        feedback = "Not quite right. Check your spelling and try again."
    else:
        feedback = f"Incorrect. The correct answer is: {correct_answer}"
    return ValidationResult(
        is_correct=is_correct,
        feedback=feedback,
        correct_answer=_revealed(correct_answer, attempt),
        confidence=1.0,
    )


def validate_client_side(
    question_type: QuestionType,
    user_answer: str | Sequence[str],
    correct_answer: str,
    attempt_number: int = 1,
) -> ValidationResult:
    """答えが一意に決まる問題種別を LLM なしで判定する。"""

    if question_type in {
        QuestionType.vocab_choice,
        QuestionType.visual_vocabulary,
        QuestionType.audio_comprehension,
    }:
        return _validate_single_choice(_as_text(user_answer), correct_answer, attempt_number)
    if question_type is QuestionType.multi_select:
        return _validate_multi_select(_as_list(user_answer), correct_answer, attempt_number)
    if question_type is QuestionType.conjugation_table:
        return _validate_conjugation_table(_as_list(user_answer), correct_answer, attempt_number)
    if question_type in {QuestionType.aspect_pairs, QuestionType.diminutive_forms}:
        return _validate_exact_match(_as_text(user_answer), correct_answer, attempt_number)
    raise ValidationError(
        f"Client validation not supported for question type: {question_type.value}",
        field="question_type",
        value=question_type.value,
    )


def _coerce_mistake_type(raw: Any) -> MistakeType | None:
    try:
        return MistakeType(str(raw).strip().lower()) if raw else None
    except ValueError:
        return None


class AnswerValidationFlow:
    """Answer grading flow.

    - 決定的に判定できる種別は `validate_client_side` に委譲する。
    - それ以外は LLM に JSON で採点させ、解析できなければ不正解扱いで続行する。
    """

    def __init__(self, *, model: Optional[str] = None, llm: Any | None = None) -> None:
        self._llm = llm or get_llm_provider(model_override=model, temperature_override=0.3)

    def _prompt(self, question: str, user_answer: str, correct_answer: str, attempt: int) -> str:
        return (
            "You are grading an answer in a Polish language practice session.\n"
            f"Question: {question}\n"
            f"Student answer: {user_answer}\n"
            f"Reference answer (do not change it): {correct_answer}\n"
            f"Attempt: {attempt} of {MAX_ATTEMPTS}\n"
            "Accept answers that are equivalent in meaning and grammatically correct Polish.\n"
            "Before the final attempt, give a hint without revealing the reference answer.\n"
            'Respond with JSON only: {"isCorrect": bool, "feedback": str, "confidenceLevel": 0-1, '
            '"errorType": "typo"|"grammar"|"vocab"|"word_order"|"incomplete_answer"|null, '
            '"keywords": [str]}'
        )

    def validate(
        self,
        question: QuestionBankItem,
        user_answer: str | Sequence[str],
        attempt_number: int,
    ) -> ValidationResult:
        # 正答が未確定の生成問題は種別に関わらず LLM で採点する
        if (
            question.question_type in CLIENT_VALIDATED_TYPES
            and question.correct_answer != PENDING_CORRECT_ANSWER
        ):
            return validate_client_side(
                question.question_type, user_answer, question.correct_answer, attempt_number
            )

        answer_text = _as_text(user_answer)
        prompt = self._prompt(question.question, answer_text, question.correct_answer, attempt_number)
        with span(
            trace=None,
            name="answer_validation.llm",
            input={"question_id": question.id, "attempt": attempt_number},
        ):
            try:
                raw = self._llm.complete(prompt)
            except Exception as exc:
                logger.error(
                    "answer_validation_llm_failed",
                    question_id=question.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if isinstance(exc, LLMServiceError):
                    raise
                raise LLMServiceError(f"LLM validation failed: {exc}") from exc

        fallback_feedback = (
            "Keep trying!"
            if attempt_number < MAX_ATTEMPTS
            else f"The correct answer is: {question.correct_answer}"
        )
        try:
            data = parse_json_object(raw)
        except LLMServiceError:
            logger.warning(
                "answer_validation_parse_failed",
                question_id=question.id,
                preview=(raw or "")[:200],
            )
            return ValidationResult(
                is_correct=False,
                feedback=fallback_feedback,
                correct_answer=question.correct_answer,
                confidence=0.5,
            )

        keywords = data.get("keywords") or []
        return ValidationResult(
            is_correct=bool(data.get("isCorrect")),
            feedback=str(data.get("feedback") or fallback_feedback),
            correct_answer=question.correct_answer,
            confidence=clamp_unit(data.get("confidenceLevel"), default=0.0),
            mistake_type=_coerce_mistake_type(data.get("errorType")),
            keywords=[str(k) for k in keywords] if isinstance(keywords, list) else [],
        )
