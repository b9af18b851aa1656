"""練習エンジン: SRS に基づく概念選択・ドリル選択・出題の組み立て。"""

from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime, timedelta
from typing import Sequence

from google.api_core import exceptions as gexc

from ..config import settings
from ..errors import ConceptSelectionError, LLMServiceError, QuestionBankWriteError, ValidationError
from ..flows.question_generation import QuestionGenerationFlow
from ..logging import logger
from ..models.common import DrillType, PracticeMode, QuestionLevel, QuestionType
from ..models.concept import Concept, ConceptGroup
from ..models.practice import (
    ConceptSelection,
    DueQueue,
    PracticeStats,
    RecentActivity,
    WeaknessRanking,
)
from ..models.progress import ConceptProgress
from ..models.question import PENDING_CORRECT_ANSWER, QuestionBankItem
from ..srs import SRSCalculator
from ..store.firestore_store import AppFirestoreStore
from .ranking import build_due_queue, rank_concepts_by_weakness

_BLANK_RE = re.compile(r"___|\[.*?\]")

# (キーワード群, 判定関数) を上から順に評価する
_TRANSLATION_KEYWORDS = ("translate", "przetłumacz", "how do you say", "jak powiedzieć")
_CLOZE_KEYWORDS = ("___", "[", "blank", "complete", "uzupełnij")
_CHOICE_KEYWORDS = ("choose", "select", "wybierz", "a)", "1)", "which")
_CONJUGATION_KEYWORDS = ("conjugate", "odmień", "verb form", "correct form", "właściwą formę")
_ARRANGEMENT_KEYWORDS = ("arrange", "order", "ułóż", "put in order", "rearrange")
_TRANSFORM_KEYWORDS = ("rewrite", "transform", "przepisz", "change", "convert")
_CULTURAL_KEYWORDS = ("culture", "tradition", "kultura", "customs", "społeczeństwo")

WEAK_MASTERY_THRESHOLD = 0.5
WEAK_SUCCESS_THRESHOLD = 0.6
WEAK_INCORRECT_THRESHOLD = 2


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'s' if count > 1 else ''}"


def infer_difficulty(concepts: Sequence[Concept]) -> QuestionLevel:
    """概念群の中で最も高い CEFR レベル。空なら A1。"""

    if not concepts:
        return QuestionLevel.A1
    return max((c.difficulty for c in concepts), key=lambda level: level.rank)


def detect_question_type(question_text: str) -> QuestionType:
    """設問文のキーワードから問題種別を推定する。"""

    text = (question_text or "").lower().strip()
    if any(k in text for k in _TRANSLATION_KEYWORDS):
        if "polish" in text or "polski" in text:
            return QuestionType.translation_en
        return QuestionType.translation_pl
    if any(k in text for k in _CLOZE_KEYWORDS):
        if len(_BLANK_RE.findall(text)) > 1:
            return QuestionType.multi_cloze
        return QuestionType.basic_cloze
    if any(k in text for k in _CHOICE_KEYWORDS):
        return QuestionType.vocab_choice
    if any(k in text for k in _CONJUGATION_KEYWORDS):
        return QuestionType.case_transform
    if any(k in text for k in _ARRANGEMENT_KEYWORDS):
        return QuestionType.word_arrangement
    if any(k in text for k in _TRANSFORM_KEYWORDS):
        return QuestionType.sentence_transform
    if any(k in text for k in _CULTURAL_KEYWORDS):
        return QuestionType.cultural_context
    return QuestionType.q_a


def _is_weak(progress: ConceptProgress) -> bool:
    return (
        progress.mastery_level < WEAK_MASTERY_THRESHOLD
        or progress.success_rate < WEAK_SUCCESS_THRESHOLD
        or progress.times_incorrect > WEAK_INCORRECT_THRESHOLD
    )


class ConceptPracticeEngine:
    """Concept selection and question assembly for practice sessions.

    概念の選択は SRS の期限（期限切れ・当日到来）と優先度を唯一の根拠とし、
    復習対象が無い新規ユーザーには A1 の基礎概念から進捗を初期化する。
    出題は問題バンクを優先し、不足分のみ LLM で生成して保存する。
    """

    def __init__(
        self,
        store: AppFirestoreStore | None = None,
        *,
        srs: SRSCalculator | None = None,
        question_flow: QuestionGenerationFlow | None = None,
    ) -> None:
        if store is None:
            from ..store import get_store

            store = get_store()
        self._store = store
        self.srs = srs or SRSCalculator(store.progress)
        self._question_flow = question_flow

    @property
    def question_flow(self) -> QuestionGenerationFlow:
        if self._question_flow is None:
            self._question_flow = QuestionGenerationFlow()
        return self._question_flow

    # --- statistics ---
    def get_practice_stats(
        self, user_id: str | None = None, now: datetime | None = None
    ) -> PracticeStats:
        user = user_id or settings.default_user_id
        current = now or datetime.now(UTC)
        due = self.srs.get_concepts_due_for_review(user, now=current)
        overdue = self.srs.get_overdue_concepts(user, now=current)
        all_progress = [p for p in self._store.progress.list_for_user(user) if p.is_active]

        week_ago = current - timedelta(days=7)
        recent = [
            p for p in self._store.progress.list_practiced_since(user, week_ago) if p.is_active
        ]
        sessions = self._store.sessions.list_sessions_since(user, week_ago)
        return PracticeStats(
            total_concepts=self._store.concepts.count_active_concepts(),
            due_concepts=len(due),
            overdue_concepts=len(overdue),
            average_mastery=(
                sum(p.mastery_level for p in all_progress) / len(all_progress)
                if all_progress
                else 0.0
            ),
            question_bank_size=self._store.questions.count_active(),
            concepts_with_progress=len(all_progress),
            recent_activity=RecentActivity(
                practice_sessions_this_week=len(sessions),
                concepts_practiced_this_week=len(recent),
                average_accuracy=(
                    sum(p.success_rate for p in recent) / len(recent) if recent else 0.0
                ),
            ),
        )

    # --- SRS selection ---
    def select_practice_concepts(
        self,
        user_id: str | None = None,
        max_concepts: int | None = None,
        now: datetime | None = None,
    ) -> ConceptSelection:
        user = user_id or settings.default_user_id
        limit = max_concepts or settings.practice_max_concepts
        current = now or datetime.now(UTC)

        overdue = self.srs.get_overdue_concepts(user, now=current)
        due = self.srs.get_concepts_due_for_review(user, now=current)
        # 期限切れは期限到来にも含まれるため概念 ID で重複を除く
        merged: dict[str, ConceptProgress] = {}
        for progress in [*overdue, *due]:
            merged.setdefault(progress.concept_id, progress)
        if not merged:
            logger.info("practice_selection_no_due_concepts", user_id=user)
            return self.initialize_new_user_practice(user, limit, now=current)

        priorities = {
            cid: self.srs.calculate_priority(progress, now=current)
            for cid, progress in merged.items()
        }
        selected = sorted(
            merged.values(), key=lambda p: (-priorities[p.concept_id], p.next_review)
        )[:limit]
        selected_ids = [p.concept_id for p in selected]

        concepts = [c for c in self._store.concepts.get_concepts_by_ids(selected_ids) if c.is_active]
        groups = self.get_groups_for_concepts(selected_ids)
        grouped_ids = {cid for group in groups for cid in group.member_concepts}
        ungrouped = [c for c in concepts if c.id not in grouped_ids]

        overdue_ids = {p.concept_id for p in overdue}
        rationale = self._group_aware_rationale(selected, overdue_ids, groups, ungrouped)
        logger.info(
            "practice_concepts_selected",
            user_id=user,
            selected=len(concepts),
            candidates=len(merged),
        )
        return ConceptSelection(
            concepts=concepts,
            rationale=rationale,
            priorities={cid: priorities[cid] for cid in selected_ids},
            groups=groups,
            ungrouped_concepts=ungrouped,
        )

    def _selection_rationale(
        self, selected: Sequence[ConceptProgress], overdue_ids: set[str]
    ) -> str:
        overdue_count = sum(1 for p in selected if p.concept_id in overdue_ids)
        due_count = len(selected) - overdue_count
        low_mastery = sum(1 for p in selected if p.mastery_level < WEAK_MASTERY_THRESHOLD)
        parts: list[str] = []
        if overdue_count > 0:
            parts.append(_plural(overdue_count, "overdue concept"))
        if due_count > 0:
            parts.append(f"{_plural(due_count, 'concept')} due today")
        if low_mastery > 0:
            parts.append(f"focusing on {_plural(low_mastery, 'concept')} that need more practice")
        if not parts:
            return "Selected concepts based on spaced repetition schedule"
        return f"Selected {', '.join(parts)} for optimal learning"

    def _group_aware_rationale(
        self,
        selected: Sequence[ConceptProgress],
        overdue_ids: set[str],
        groups: Sequence[ConceptGroup],
        ungrouped: Sequence[Concept],
    ) -> str:
        base = self._selection_rationale(selected, overdue_ids)
        info: list[str] = []
        if groups:
            info.append(f"organized by {', '.join(g.name for g in groups)}")
        if ungrouped:
            info.append(_plural(len(ungrouped), "individual concept"))
        if info:
            return f"{base} ({' and '.join(info)})"
        return base

    def initialize_new_user_practice(
        self, user_id: str, max_concepts: int, now: datetime | None = None
    ) -> ConceptSelection:
        """復習対象が無いとき、A1 の基礎概念（無ければ任意の概念）から始める。"""

        concepts = self._store.concepts.list_active_concepts(
            difficulty=QuestionLevel.A1, limit=max_concepts
        )
        rationale = "Starting with fundamental A1-level concepts to build your foundation"
        if not concepts:
            concepts = self._store.concepts.list_active_concepts(limit=max_concepts)
            rationale = "Starting with available concepts to begin your learning journey"
        for concept in concepts:
            self.srs.initialize_concept_progress(concept.id, user_id, now=now)
        logger.info("practice_new_user_initialized", user_id=user_id, concepts=len(concepts))
        return ConceptSelection(concepts=concepts, rationale=rationale)

    def select_concepts_from_course(
        self, course_id: int, max_concepts: int | None = None
    ) -> ConceptSelection:
        limit = max_concepts or settings.practice_max_concepts
        links = self._store.courses.list_course_concepts(course_id)[:limit]
        if not links:
            return ConceptSelection(
                rationale=f"No concepts have been extracted from course {course_id} yet"
            )
        concepts = [
            c
            for c in self._store.concepts.get_concepts_by_ids([l.concept_id for l in links])
            if c.is_active
        ]
        course = self._store.courses.get_course(course_id)
        course_name = (
            f"{course.course_type.value} course from {course.date.date().isoformat()}"
            if course is not None
            else f"Course {course_id}"
        )
        return ConceptSelection(
            concepts=concepts,
            rationale=f"Practice session focused on concepts from {course_name}",
            priorities={l.concept_id: l.confidence for l in links},
        )

    # --- groups ---
    def get_groups_for_concepts(self, concept_ids: Sequence[str]) -> list[ConceptGroup]:
        """概念を含む有効なグループ。取得失敗時は選定理由を簡略化して続行する。"""

        if not concept_ids:
            return []
        try:
            return self._store.concepts.list_groups_containing(concept_ids)
        except gexc.GoogleAPICallError as exc:
            logger.warning("concept_group_lookup_failed", error=str(exc))
            return []

    def get_concepts_in_group(self, group_id: str) -> list[Concept]:
        group = self._store.concepts.get_group(group_id)
        if group is None or not group.is_active:
            logger.info("concept_group_not_found", group_id=group_id)
            return []
        return [
            c
            for c in self._store.concepts.get_concepts_by_ids(group.member_concepts)
            if c.is_active
        ]

    # --- drill ---
    def get_drill_concepts_by_weakness(
        self, user_id: str | None = None, max_concepts: int = 10
    ) -> list[str]:
        """弱い概念を弱い順に返す。max_concepts=0 は上限なし。"""

        user = user_id or settings.default_user_id
        weak = [
            p for p in self._store.progress.list_for_user(user) if p.is_active and _is_weak(p)
        ]
        weak.sort(key=lambda p: (p.mastery_level, p.success_rate, -p.times_incorrect))
        if max_concepts > 0:
            weak = weak[:max_concepts]
        return [p.concept_id for p in weak]

    def get_drill_concepts_by_course(self, course_id: int, max_concepts: int = 10) -> list[str]:
        return self.get_drill_concepts_by_courses([course_id], max_concepts)

    def get_drill_concepts_by_courses(
        self, course_ids: Sequence[int], max_concepts: int = 10
    ) -> list[str]:
        links = [
            link
            for course_id in course_ids
            for link in self._store.courses.list_course_concepts(course_id)
        ]
        links.sort(key=lambda link: -link.confidence)
        concept_ids = list(dict.fromkeys(link.concept_id for link in links))
        return concept_ids[:max_concepts] if max_concepts > 0 else concept_ids

    def get_drill_concepts_by_group(
        self, group_id: str, max_concepts: int | None = None
    ) -> list[str]:
        limit = max_concepts or settings.drill_group_max_concepts
        return [c.id for c in self.get_concepts_in_group(group_id)][:limit]

    def get_drill_concepts_by_groups(
        self, group_ids: Sequence[str], max_concepts: int | None = None
    ) -> list[str]:
        limit = max_concepts or settings.drill_group_max_concepts
        concept_ids: dict[str, None] = {}
        for group_id in group_ids:
            for concept_id in self.get_drill_concepts_by_group(group_id, limit):
                concept_ids.setdefault(concept_id, None)
        return list(concept_ids)[:limit]

    def select_drill_concepts(
        self,
        drill_type: DrillType | str,
        *,
        user_id: str | None = None,
        course_id: int | None = None,
        group_id: str | None = None,
        group_ids: Sequence[str] | None = None,
        max_concepts: int = 10,
    ) -> ConceptSelection:
        try:
            mode = DrillType(drill_type)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown drill type: {drill_type}", field="drill_type", value=drill_type
            ) from exc

        if mode is DrillType.weakness:
            concept_ids = self.get_drill_concepts_by_weakness(user_id, max_concepts)
            rationale = "Drill session focusing on concepts that need more practice"
        elif mode is DrillType.course:
            if course_id is None:
                raise ConceptSelectionError("course_id is required for course drills")
            concept_ids = self.get_drill_concepts_by_course(course_id, max_concepts)
            rationale = f"Drill session for Course {course_id}"
        elif mode is DrillType.group:
            if not group_id:
                raise ConceptSelectionError("group_id is required for group drills")
            concept_ids = self.get_drill_concepts_by_group(group_id, max_concepts)
            group = self._store.concepts.get_group(group_id)
            rationale = f"Drill session for group: {group.name if group else group_id}"
        else:
            if not group_ids:
                raise ConceptSelectionError("group_ids are required for multi-group drills")
            concept_ids = self.get_drill_concepts_by_groups(group_ids, max_concepts)
            names = ", ".join(g.name for g in self._store.concepts.get_groups(group_ids))
            rationale = f"Drill session for groups: {names}"

        if not concept_ids:
            return ConceptSelection(rationale=f"No concepts found for drill mode: {mode.value}")
        concepts = [c for c in self._store.concepts.get_concepts_by_ids(concept_ids) if c.is_active]
        logger.info("drill_concepts_selected", mode=mode.value, selected=len(concepts))
        return ConceptSelection(
            concepts=concepts,
            rationale=rationale,
            priorities={c.id: 1.0 for c in concepts},
        )

    # --- weakness / due queue views ---
    def get_concepts_by_weakness(
        self,
        user_id: str | None = None,
        category: str | None = None,
        now: datetime | None = None,
    ) -> WeaknessRanking:
        user = user_id or settings.default_user_id
        concepts = self._store.concepts.list_active_concepts()
        if category:
            concepts = [c for c in concepts if c.category.value == category]
        progress = {
            cid: p
            for cid, p in self._store.progress.list_for_concepts(
                user, [c.id for c in concepts]
            ).items()
            if p.is_active
        }
        return rank_concepts_by_weakness(concepts, progress, now or datetime.now(UTC))

    def get_due_queue(self, user_id: str | None = None, now: datetime | None = None) -> DueQueue:
        user = user_id or settings.default_user_id
        current = now or datetime.now(UTC)
        due = self.srs.get_concepts_due_for_review(user, now=current)
        overdue = self.srs.get_overdue_concepts(user, now=current)
        concept_ids = list(dict.fromkeys(p.concept_id for p in [*overdue, *due]))
        concepts = self._store.concepts.get_concepts_by_ids(concept_ids)
        return build_due_queue(due, overdue, concepts, current, calculator=self.srs)

    # --- questions ---
    def get_questions_for_concepts(
        self,
        concept_ids: Sequence[str],
        mode: PracticeMode = PracticeMode.normal,
        max_questions: int | None = None,
    ) -> list[QuestionBankItem]:
        """問題バンクから出題を集め、不足分を LLM 生成で補う。"""

        limit = max_questions or settings.practice_max_questions
        if not concept_ids:
            logger.info("practice_questions_fallback_recent", mode=PracticeMode(mode).value)
            return self._store.questions.list_recent(limit)

        questions = self._store.questions.list_for_concepts(concept_ids, limit)
        if len(questions) < limit:
            generated = self.generate_new_questions(concept_ids, limit - len(questions))
            logger.info(
                "practice_questions_assembled",
                from_bank=len(questions),
                generated=len(generated),
            )
            questions = [*questions, *generated]
        return questions

    def generate_new_questions(
        self, concept_ids: Sequence[str], count: int
    ) -> list[QuestionBankItem]:
        if count <= 0:
            return []
        concepts = [c for c in self._store.concepts.get_concepts_by_ids(concept_ids) if c.is_active]
        if not concepts:
            logger.info("question_generation_no_concepts", concept_ids=list(concept_ids))
            return []

        saved: list[QuestionBankItem] = []
        for index in range(min(count, settings.question_generation_max)):
            try:
                generated = self.question_flow.generate(concepts, [q.question for q in saved])
                if generated is None:
                    continue
                item = QuestionBankItem(
                    id=str(uuid.uuid4()),
                    question=generated.question,
                    correct_answer=generated.correct_answer or PENDING_CORRECT_ANSWER,
                    question_type=generated.question_type
                    or detect_question_type(generated.question),
                    target_concepts=list(concept_ids),
                    difficulty=infer_difficulty(concepts),
                    source="generated",
                    options=generated.options,
                )
                self._store.questions.save_question(item)
            except (LLMServiceError, QuestionBankWriteError) as exc:
                logger.warning(
                    "question_generation_failed",
                    index=index,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            saved.append(item)
        return saved

    def update_question_performance(self, question_id: str, is_correct: bool) -> None:
        updated = self._store.questions.update_performance(question_id, is_correct)
        if updated is None:
            logger.warning("question_performance_missing", question_id=question_id)
            return
        logger.info(
            "question_performance_updated",
            question_id=question_id,
            success_rate=round(updated.success_rate, 3),
        )


__all__ = [
    "ConceptPracticeEngine",
    "detect_question_type",
    "infer_difficulty",
]
