from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from .common import CompletionReason, PracticeMode, utcnow


MAX_ATTEMPTS = 3


class QuestionResponse(BaseModel):
    question_id: str
    attempts: int = Field(ge=1, le=MAX_ATTEMPTS)
    is_correct: bool = False
    # 全試行の回答時間(ms)の累積
    response_time: float = Field(default=0.0, ge=0.0)
    user_answer: str = ""
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def is_completed(self) -> bool:
        return self.is_correct or self.attempts >= MAX_ATTEMPTS


class SessionMetrics(BaseModel):
    total_questions: int = 0
    correct_answers: int = 0
    new_questions_generated: int = 0


class PracticeSession(BaseModel):
    session_id: str
    user_id: str = "default"
    mode: PracticeMode = PracticeMode.normal
    selected_concepts: list[str] = Field(default_factory=list)
    questions_used: list[str] = Field(default_factory=list)
    question_responses: list[QuestionResponse] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    completion_reason: CompletionReason | None = None
    session_metrics: SessionMetrics = Field(default_factory=SessionMetrics)
    is_active: bool = True

    def find_response(self, question_id: str) -> QuestionResponse | None:
        for response in self.question_responses:
            if response.question_id == question_id:
                return response
        return None

    def completed_responses(self) -> list[QuestionResponse]:
        return [resp for resp in self.question_responses if resp.is_completed]

    def refresh_metrics(self) -> None:
        """完了済み回答から total/correct を再計算する（生成数は保持）。"""

        self.session_metrics.total_questions = len(self.completed_responses())
        self.session_metrics.correct_answers = sum(
            1 for resp in self.question_responses if resp.is_correct
        )
