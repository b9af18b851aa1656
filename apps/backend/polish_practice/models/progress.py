from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, computed_field

from .common import utcnow


class ConceptProgress(BaseModel):
    """ユーザー×概念ごとの SRS 状態。(user_id, concept_id) の組で一意。"""

    user_id: str = "default"
    concept_id: str = Field(min_length=1)
    mastery_level: float = Field(default=0.0, ge=0.0, le=1.0)
    last_practiced: datetime | None = None
    next_review: datetime = Field(default_factory=utcnow)
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    total_attempts: int = Field(default=0, ge=0)
    consecutive_correct: int = Field(default=0, ge=0)
    easiness_factor: float = Field(default=2.5, ge=1.3, le=2.5)
    interval_days: int = Field(default=1, ge=1, le=365)
    is_active: bool = True

    @computed_field  # type: ignore[prop-decorator]
    @property
    def times_incorrect(self) -> int:
        """不正解回数。正答率と試行回数から復元する。"""

        correct = round(self.success_rate * self.total_attempts)
        return max(0, self.total_attempts - correct)
