"""SM-2 ベースの間隔反復スケジューラ。

`SRSCalculator` は純粋計算（次回復習日・優先度）と、進捗ストアを介した
状態遷移（初期化・回答反映・期限到来/期限切れの抽出）をまとめて提供する。
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from typing import TYPE_CHECKING

from .config import settings
from .errors import SRSCalculationError
from .logging import logger
from .models.progress import ConceptProgress

if TYPE_CHECKING:
    from .store.firestore_store import FirestoreProgressStore

MIN_EASINESS_FACTOR = 1.3
MAX_EASINESS_FACTOR = 2.5
INITIAL_INTERVAL = 1
MAX_INTERVAL = 365
FAST_RESPONSE_MS = 5000
SLOW_RESPONSE_MS = 15000


@dataclass(frozen=True)
class SRSResult:
    next_review: datetime
    new_easiness_factor: float
    new_interval_days: int
    mastery_level_change: float


def _round_half_up(value: float) -> int:
    # 組み込み round は偶数丸めのため 0.5 は切り上げに揃える
    return int(math.floor(value + 0.5))


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def _resolve_now(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(UTC)
    if now.tzinfo is None:
        return now.replace(tzinfo=UTC)
    return now


def start_of_day(now: datetime) -> datetime:
    """UTC の当日 00:00。"""

    current = _resolve_now(now).astimezone(UTC)
    return datetime.combine(current.date(), time.min, tzinfo=UTC)


def end_of_yesterday(now: datetime) -> datetime:
    """UTC の前日 23:59:59.999。"""

    return start_of_day(now) - timedelta(milliseconds=1)


class SRSCalculator:
    """Spaced repetition calculator and progress state machine.

    `progress_store` を渡さない場合は純粋計算 (`calculate_next_review`,
    `calculate_priority`) のみ利用できる。
    """

    def __init__(self, progress_store: "FirestoreProgressStore | None" = None) -> None:
        self._progress = progress_store

    @property
    def progress_store(self) -> "FirestoreProgressStore":
        if self._progress is None:
            from .store import get_store

            self._progress = get_store().progress
        return self._progress

    # --- pure calculation ---
    def calculate_next_review(
        self,
        progress: ConceptProgress,
        is_correct: bool,
        response_time: float = 0,
        difficulty_rating: int | None = None,
        now: datetime | None = None,
    ) -> SRSResult:
        """回答結果から次回復習日・EF・間隔・習熟度変化量を求める。

        正解時は連続正解数で間隔を決め (1日 → 6日 → 前回間隔×EF)、
        速い回答と難易度評価で EF を調整する。不正解時は間隔を1日に戻し
        EF を下げ、遅い回答ならさらに下げる。
        """

        if response_time is None or response_time < 0:
            raise SRSCalculationError(
                "response_time must be non-negative", {"response_time": response_time}
            )
        if difficulty_rating is not None and not 1 <= difficulty_rating <= 5:
            raise SRSCalculationError(
                "difficulty_rating must be between 1 and 5",
                {"difficulty_rating": difficulty_rating},
            )
        current = _resolve_now(now)
        easiness = progress.easiness_factor
        interval = progress.interval_days

        if is_correct:
            consecutive = progress.consecutive_correct + 1
            mastery_change = 0.1
            if consecutive == 1:
                interval = 1
            elif consecutive == 2:
                interval = 6
            else:
                interval = _round_half_up(interval * easiness)
            if response_time < FAST_RESPONSE_MS:
                easiness += 0.05
            if difficulty_rating:
                easiness += (3 - difficulty_rating) * 0.05
        else:
            mastery_change = -0.2
            interval = INITIAL_INTERVAL
            easiness -= 0.2
            if response_time > SLOW_RESPONSE_MS:
                easiness -= 0.1

        easiness = _clamp(easiness, MIN_EASINESS_FACTOR, MAX_EASINESS_FACTOR)
        interval = int(_clamp(interval, INITIAL_INTERVAL, MAX_INTERVAL))
        return SRSResult(
            next_review=current + timedelta(days=interval),
            new_easiness_factor=easiness,
            new_interval_days=interval,
            mastery_level_change=mastery_change,
        )

    def calculate_priority(self, progress: ConceptProgress, now: datetime | None = None) -> float:
        """復習優先度。期限超過日数・低習熟度・低正答率・低 EF ほど高い。"""

        current = _resolve_now(now)
        priority = 0.0
        days_overdue = math.floor((current - progress.next_review).total_seconds() / 86400)
        if days_overdue > 0:
            priority += days_overdue * 2
        priority += (1 - progress.mastery_level) * 10
        priority += (1 - progress.success_rate) * 5
        priority += (MAX_EASINESS_FACTOR - progress.easiness_factor) * 2
        return max(0.0, priority)

    # --- store-backed queues ---
    def get_concepts_due_for_review(
        self, user_id: str | None = None, now: datetime | None = None
    ) -> list[ConceptProgress]:
        """当日 0 時までに復習日を迎えた有効な進捗を古い順に返す。"""

        user = user_id or settings.default_user_id
        return self.progress_store.list_due(user, start_of_day(_resolve_now(now)))

    def get_overdue_concepts(
        self, user_id: str | None = None, now: datetime | None = None
    ) -> list[ConceptProgress]:
        """前日中に復習日を過ぎた有効な進捗を古い順に返す。"""

        user = user_id or settings.default_user_id
        return self.progress_store.list_overdue(user, end_of_yesterday(_resolve_now(now)))

    # --- state transitions ---
    def initialize_concept_progress(
        self,
        concept_id: str,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> ConceptProgress:
        """進捗が無ければ初期状態で作成する。既存ならそのまま返す。"""

        user = user_id or settings.default_user_id
        existing = self.progress_store.get_progress(user, concept_id)
        if existing is not None:
            return existing
        progress = ConceptProgress(
            user_id=user,
            concept_id=concept_id,
            next_review=_resolve_now(now),
        )
        self.progress_store.save_progress(progress)
        logger.info("srs_progress_initialized", user_id=user, concept_id=concept_id)
        return progress

    def update_concept_progress(
        self,
        concept_id: str,
        is_correct: bool,
        response_time: float,
        user_id: str | None = None,
        difficulty_rating: int | None = None,
        now: datetime | None = None,
    ) -> ConceptProgress:
        """回答1件を進捗へ反映して保存する。"""

        user = user_id or settings.default_user_id
        current = _resolve_now(now)
        progress = self.initialize_concept_progress(concept_id, user, now=current)
        result = self.calculate_next_review(
            progress,
            is_correct,
            response_time=response_time,
            difficulty_rating=difficulty_rating,
            now=current,
        )
        attempts = progress.total_attempts + 1
        updated = progress.model_copy(
            update={
                "last_practiced": current,
                "next_review": result.next_review,
                "easiness_factor": result.new_easiness_factor,
                "interval_days": result.new_interval_days,
                "total_attempts": attempts,
                "consecutive_correct": progress.consecutive_correct + 1 if is_correct else 0,
                "mastery_level": _clamp(
                    progress.mastery_level + result.mastery_level_change, 0.0, 1.0
                ),
                "success_rate": (
                    progress.success_rate * (attempts - 1) + (1.0 if is_correct else 0.0)
                )
                / attempts,
            }
        )
        self.progress_store.save_progress(updated)
        logger.info(
            "srs_progress_updated",
            user_id=user,
            concept_id=concept_id,
            is_correct=is_correct,
            interval_days=updated.interval_days,
            easiness_factor=round(updated.easiness_factor, 3),
            mastery_level=round(updated.mastery_level, 3),
        )
        return updated
