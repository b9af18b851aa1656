from __future__ import annotations

from typing import Any, Optional, Sequence

from ..errors import LLMServiceError
from ..logging import logger
from ..models.common import QuestionType
from ..models.concept import Concept
from ..models.practice import GeneratedQuestion
from ..observability import span
from ..providers import get_llm_provider
from .llm_json import parse_json_object, strip_code_fences


def build_concept_context(concepts: Sequence[Concept]) -> str:
    """`name: description. Examples: a, b` を1概念1行で並べる。"""

    return "\n".join(
        f"{c.name}: {c.description}. Examples: {', '.join(c.examples)}" for c in concepts
    )


class QuestionGenerationFlow:
    """Generate one practice question for a set of concepts.

    問題バンクが不足したときに練習エンジンから呼ばれる。JSON で返らない場合も
    本文をそのまま設問として扱い、空応答なら None を返す。
    """

    def __init__(self, *, model: Optional[str] = None, llm: Any | None = None) -> None:
        self._llm = llm or get_llm_provider(model_override=model, temperature_override=0.7)

    def _prompt(self, concepts: Sequence[Concept], previous_questions: Sequence[str]) -> str:
        previous = "\n".join(f"- {q}" for q in previous_questions) or "None"
        keywords = ", ".join(c.name for c in concepts)
        return (
            "Write ONE new practice question for a learner of Polish.\n"
            f"Target concepts ({keywords}):\n{build_concept_context(concepts)}\n"
            f"Do not repeat these previous questions:\n{previous}\n"
            f"Allowed questionType values: {', '.join(t.value for t in QuestionType)}.\n"
            'Respond with JSON only: {"question": str, "correctAnswer": str, '
            '"questionType": str, "options": [str] | null}'
        )

    def generate(
        self, concepts: Sequence[Concept], previous_questions: Sequence[str] = ()
    ) -> GeneratedQuestion | None:
        if not concepts:
            return None
        prompt = self._prompt(concepts, previous_questions)
        with span(
            trace=None,
            name="question_generation.llm",
            input={"concepts": [c.id for c in concepts], "prompt_chars": len(prompt)},
        ):
            raw = self._llm.complete(prompt)

        text = strip_code_fences(raw or "")
        if not text or "Failed to generate" in text:
            logger.info("question_generation_empty", concepts=[c.id for c in concepts])
            return None
        try:
            data = parse_json_object(text)
        except LLMServiceError:
            # 素のテキストで返ってきた場合は設問本文として扱う
            return GeneratedQuestion(question=text)

        question = str(data.get("question") or "").strip()
        if not question:
            return None
        raw_type = str(data.get("questionType") or "").strip().lower()
        question_type = (
            QuestionType(raw_type) if raw_type in {t.value for t in QuestionType} else None
        )
        options = data.get("options")
        answer = str(data.get("correctAnswer") or "").strip()
        return GeneratedQuestion(
            question=question,
            correct_answer=answer or None,
            question_type=question_type,
            options=[str(o) for o in options] if isinstance(options, list) and options else None,
        )
