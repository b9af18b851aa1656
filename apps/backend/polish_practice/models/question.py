from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from .common import QuestionLevel, QuestionType, utcnow


PENDING_CORRECT_ANSWER = "To be determined during practice"


class QuestionBankItem(BaseModel):
    """問題バンクの1問。`source=generated` は練習中に LLM が補充したもの。"""

    id: str = Field(min_length=1)
    question: str = Field(min_length=1)
    correct_answer: str = ""
    question_type: QuestionType = QuestionType.q_a
    target_concepts: list[str] = Field(default_factory=list)
    difficulty: QuestionLevel = QuestionLevel.A1
    times_used: int = Field(default=0, ge=0)
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    last_used: datetime = Field(default_factory=utcnow)
    created_date: datetime = Field(default_factory=utcnow)
    is_active: bool = True
    source: Literal["generated", "manual"] = "generated"
    options: list[str] | None = None
    audio_url: str | None = None
    image_url: str | None = None
