from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from .common import CompletionReason, MistakeType, PracticeMode, QuestionLevel, QuestionType
from .concept import Concept, ConceptGroup
from .question import QuestionBankItem


class ConceptSelection(BaseModel):
    """練習対象として選ばれた概念と、その選定理由。"""

    concepts: list[Concept] = Field(default_factory=list)
    rationale: str = ""
    # concept_id -> 優先度スコア
    priorities: dict[str, float] = Field(default_factory=dict)
    groups: list[ConceptGroup] = Field(default_factory=list)
    ungrouped_concepts: list[Concept] = Field(default_factory=list)

    @property
    def concept_ids(self) -> list[str]:
        return [concept.id for concept in self.concepts]


class RecentActivity(BaseModel):
    practice_sessions_this_week: int = 0
    concepts_practiced_this_week: int = 0
    average_accuracy: float = 0.0


class PracticeStats(BaseModel):
    total_concepts: int = 0
    due_concepts: int = 0
    overdue_concepts: int = 0
    average_mastery: float = 0.0
    question_bank_size: int = 0
    concepts_with_progress: int = 0
    recent_activity: RecentActivity = Field(default_factory=RecentActivity)


class WeaknessEntry(BaseModel):
    concept: Concept
    weakness_score: float
    mastery_level: float | None = None
    success_rate: float | None = None
    times_incorrect: int = 0
    is_overdue: bool = False
    days_since_review: int = 999
    next_review: datetime | None = None


class WeaknessSummary(BaseModel):
    total_concepts: int = 0
    concepts_with_progress: int = 0
    concepts_without_progress: int = 0
    average_weakness_score: float = 0.0


class WeaknessRanking(BaseModel):
    entries: list[WeaknessEntry] = Field(default_factory=list)
    summary: WeaknessSummary = Field(default_factory=WeaknessSummary)


class DueQueueEntry(BaseModel):
    concept: Concept
    priority: float
    next_review: datetime
    mastery_level: float
    is_overdue: bool


class DueQueue(BaseModel):
    total_due: int = 0
    due_concepts: int = 0
    overdue_concepts: int = 0
    is_due_queue_cleared: bool = True
    average_priority: float = 0.0
    entries: list[DueQueueEntry] = Field(default_factory=list)


class ValidationResult(BaseModel):
    is_correct: bool
    feedback: str
    # 保存済みの正答をそのまま返す（LLM が書き換えることはない）
    correct_answer: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    mistake_type: MistakeType | None = None
    keywords: list[str] = Field(default_factory=list)


class GeneratedQuestion(BaseModel):
    question: str
    correct_answer: str | None = None
    question_type: QuestionType | None = None
    options: list[str] | None = None


class SessionStart(BaseModel):
    session_id: str
    mode: PracticeMode
    concept_ids: list[str]
    questions: list[QuestionBankItem]
    rationale: str
    fallback_used: bool = False
    questions_with_matching_concepts: int = 0
    fallback_questions: int = 0


class SessionProgress(BaseModel):
    total_questions: int = 0
    correct_answers: int = 0
    questions_completed: int = 0


class ValidationDetails(BaseModel):
    confidence_level: float = 0.0
    mistake_type: MistakeType | None = None
    question_level: QuestionLevel = QuestionLevel.A2
    keywords: list[str] = Field(default_factory=list)


class AnswerOutcome(BaseModel):
    session_id: str
    question_id: str
    attempt_number: int
    is_correct: bool
    feedback: str
    correct_answer: str | None = None
    is_question_completed: bool
    attempts_remaining: int
    session_progress: SessionProgress
    validation_details: ValidationDetails


class AttemptsBreakdown(BaseModel):
    first_attempt: int = 0
    second_attempt: int = 0
    third_attempt: int = 0
    failed: int = 0


class SessionAnalysis(BaseModel):
    session_id: str
    completion_reason: CompletionReason
    duration: float = 0.0
    questions_attempted: int = 0
    correct_answers: int = 0
    accuracy: int = 0
    average_response_time: int = 0
    concepts_reviewed: int = 0
    attempts_breakdown: AttemptsBreakdown = Field(default_factory=AttemptsBreakdown)


class ConceptProgressSnapshot(BaseModel):
    concept_id: str
    mastery_level: float
    success_rate: float
    next_review: datetime
    last_practiced: datetime | None = None
    consecutive_correct: int = 0
    interval_days: int = 1


class SessionSummary(BaseModel):
    session_id: str
    completion_reason: CompletionReason
    analysis: SessionAnalysis
    recommendations: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    concepts_with_progress: list[ConceptProgressSnapshot] = Field(default_factory=list)
