"""弱点ランキングと復習キューの集計（ストアに依存しない純粋関数）。"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Mapping, Sequence

from ..models.concept import Concept
from ..models.practice import (
    DueQueue,
    DueQueueEntry,
    WeaknessEntry,
    WeaknessRanking,
    WeaknessSummary,
)
from ..models.progress import ConceptProgress
from ..srs import SRSCalculator

NO_HISTORY_WEAKNESS = 1000.0
NEVER_REVIEWED_DAYS = 999


def weakness_score(progress: ConceptProgress | None) -> float:
    """弱さのスコア。練習履歴が無い概念は最弱 (1000) とみなす。"""

    if progress is None:
        return NO_HISTORY_WEAKNESS
    mastery_weakness = (1 - progress.mastery_level) * 100
    success_weakness = (1 - progress.success_rate) * 100
    incorrect_weakness = min(progress.times_incorrect * 10, 100)
    return mastery_weakness * 0.5 + success_weakness * 0.3 + incorrect_weakness * 0.2


def rank_concepts_by_weakness(
    concepts: Sequence[Concept],
    progress_by_id: Mapping[str, ConceptProgress],
    now: datetime,
) -> WeaknessRanking:
    entries: list[WeaknessEntry] = []
    for concept in concepts:
        progress = progress_by_id.get(concept.id)
        if progress is None:
            entries.append(WeaknessEntry(concept=concept, weakness_score=NO_HISTORY_WEAKNESS))
            continue
        days_since = (
            math.floor((now - progress.last_practiced).total_seconds() / 86400)
            if progress.last_practiced is not None
            else NEVER_REVIEWED_DAYS
        )
        entries.append(
            WeaknessEntry(
                concept=concept,
                weakness_score=weakness_score(progress),
                mastery_level=progress.mastery_level,
                success_rate=progress.success_rate,
                times_incorrect=progress.times_incorrect,
                is_overdue=progress.next_review < now,
                days_since_review=days_since,
                next_review=progress.next_review,
            )
        )
    entries.sort(key=lambda e: (-e.weakness_score, e.concept.name))

    with_history = sum(1 for e in entries if e.weakness_score < NO_HISTORY_WEAKNESS)
    summary = WeaknessSummary(
        total_concepts=len(entries),
        concepts_with_progress=with_history,
        concepts_without_progress=len(entries) - with_history,
        average_weakness_score=(
            sum(e.weakness_score for e in entries) / len(entries) if entries else 0.0
        ),
    )
    return WeaknessRanking(entries=entries, summary=summary)


def build_due_queue(
    due: Sequence[ConceptProgress],
    overdue: Sequence[ConceptProgress],
    concepts: Sequence[Concept],
    now: datetime,
    calculator: SRSCalculator | None = None,
) -> DueQueue:
    """期限到来・期限切れの進捗を概念と突き合わせ、優先度順のキューにする。

    件数は概念 ID で重複を除いて数える（期限切れは期限到来にも含まれる）。
    概念が見つからない・無効な進捗は詳細から落とす。
    """

    calc = calculator or SRSCalculator()
    merged: dict[str, ConceptProgress] = {}
    for progress in [*overdue, *due]:
        merged.setdefault(progress.concept_id, progress)
    overdue_ids = {p.concept_id for p in overdue}
    active = {c.id: c for c in concepts if c.is_active}

    entries = [
        DueQueueEntry(
            concept=active[concept_id],
            priority=calc.calculate_priority(progress, now=now),
            next_review=progress.next_review,
            mastery_level=progress.mastery_level,
            is_overdue=concept_id in overdue_ids,
        )
        for concept_id, progress in merged.items()
        if concept_id in active
    ]
    entries.sort(key=lambda e: (-e.priority, e.next_review))
    return DueQueue(
        total_due=len(merged),
        due_concepts=len(due),
        overdue_concepts=len(overdue),
        is_due_queue_cleared=not merged,
        average_priority=(sum(e.priority for e in entries) / len(entries) if entries else 0.0),
        entries=entries,
    )
