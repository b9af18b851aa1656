from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from google.cloud import firestore

from ..config import settings
from ..errors import QuestionBankWriteError
from ..logging import logger
from ..models.common import QuestionLevel
from ..models.concept import Concept, ConceptGroup, Course, CourseConcept
from ..models.progress import ConceptProgress
from ..models.question import QuestionBankItem
from ..models.session import PracticeSession
from .common import normalize_non_negative_int, to_document, to_firestore_value, to_iso

# Firestore の "in" / "array_contains_any" が一度に受け付ける値の上限
_IN_QUERY_CHUNK = 30


def _chunked(values: Sequence[str], size: int = _IN_QUERY_CHUNK) -> Iterator[list[str]]:
    for start in range(0, len(values), size):
        yield list(values[start : start + size])


def _unique(values: Iterable[str]) -> list[str]:
    """出現順を保ったまま重複と空文字を除く。"""

    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def _extract_count_from_aggregation(
    aggregation: Sequence[Any] | None,
) -> int:
    """Extracts the numeric count from Firestore aggregation results."""

    if not aggregation:
        return 0
    result = aggregation[0]
    # 実クライアントは [[AggregationResult]] の二重リストで返す
    if isinstance(result, list):
        if not result:
            return 0
        result = result[0]
    count_value: Any | None = None
    aggregate_fields = getattr(result, "aggregate_fields", None)
    if isinstance(aggregate_fields, Mapping):
        count_value = aggregate_fields.get("count")
    if count_value is None and getattr(result, "alias", None) == "count":
        count_value = getattr(result, "value", None)
    return int(count_value or 0)


def _count(query: Any) -> int:
    try:
        aggregation = query.count(alias="count").get()
    except AttributeError:
        return sum(1 for _ in query.stream())
    return _extract_count_from_aggregation(aggregation)


class FirestoreBaseStore:
    """Firestore クライアント共通のヘルパー。"""

    def __init__(self, client: firestore.Client):
        self._client = client


class FirestoreConceptStore(FirestoreBaseStore):
    """概念と概念グループを Firestore で管理する。"""

    def __init__(self, client: firestore.Client):
        super().__init__(client)
        self._concepts = client.collection("concepts")
        self._groups = client.collection("concept_groups")

    def save_concept(self, concept: Concept) -> None:
        # 重複検出用に小文字化した名前を併せて保存する
        payload = to_document(concept, name_lower=concept.name.strip().lower())
        self._concepts.document(concept.id).set(payload, merge=True)

    def get_concept(self, concept_id: str) -> Concept | None:
        snapshot = self._concepts.document(concept_id).get()
        if not snapshot.exists:
            return None
        return Concept.model_validate(snapshot.to_dict() or {})

    def get_concepts_by_ids(self, concept_ids: Sequence[str]) -> list[Concept]:
        """ID 順を保って概念を返す。存在しない ID は読み飛ばす。"""

        ids = _unique(concept_ids)
        if not ids:
            return []
        found: dict[str, Concept] = {}
        for chunk in _chunked(ids):
            for snapshot in self._concepts.where("id", "in", chunk).stream():
                concept = Concept.model_validate(snapshot.to_dict() or {})
                found[concept.id] = concept
        return [found[cid] for cid in ids if cid in found]

    def list_active_concepts(
        self,
        *,
        difficulty: QuestionLevel | None = None,
        limit: int | None = None,
    ) -> list[Concept]:
        """有効な概念を名前順で返す。"""

        query = self._concepts.where("is_active", "==", True)
        if difficulty is not None:
            query = query.where("difficulty", "==", difficulty.value)
        query = query.order_by("name")
        if limit is not None:
            query = query.limit(max(0, int(limit)))
        return [
            Concept.model_validate(snapshot.to_dict() or {})
            for snapshot in query.stream()
        ]

    def count_active_concepts(self) -> int:
        return _count(self._concepts.where("is_active", "==", True))

    def find_concepts_by_name(
        self, name: str, *, category: str | None = None
    ) -> list[Concept]:
        """大文字小文字を無視した完全一致で概念を探す。"""

        target = (name or "").strip().lower()
        if not target:
            return []
        query = self._concepts.where("name_lower", "==", target)
        if category:
            query = query.where("category", "==", category)
        return [
            Concept.model_validate(snapshot.to_dict() or {})
            for snapshot in query.stream()
        ]

    def add_course_source(self, concept_id: str, course_id: int) -> Concept | None:
        concept = self.get_concept(concept_id)
        if concept is None:
            return None
        source = str(course_id)
        if source not in concept.created_from:
            concept.created_from.append(source)
        concept.last_updated = datetime.now(UTC)
        self.save_concept(concept)
        return concept

    # --- groups ---
    def save_group(self, group: ConceptGroup) -> None:
        self._groups.document(group.id).set(to_document(group), merge=True)

    def get_group(self, group_id: str) -> ConceptGroup | None:
        snapshot = self._groups.document(group_id).get()
        if not snapshot.exists:
            return None
        return ConceptGroup.model_validate(snapshot.to_dict() or {})

    def get_groups(self, group_ids: Sequence[str]) -> list[ConceptGroup]:
        """ID 順を保ってグループを返す。存在しない ID は読み飛ばす。"""

        groups: list[ConceptGroup] = []
        for group_id in _unique(group_ids):
            group = self.get_group(group_id)
            if group is not None:
                groups.append(group)
        return groups

    def list_groups_containing(self, concept_ids: Sequence[str]) -> list[ConceptGroup]:
        """指定概念のいずれかをメンバーに持つ有効なグループを返す。"""

        ids = _unique(concept_ids)
        groups: dict[str, ConceptGroup] = {}
        for chunk in _chunked(ids):
            query = self._groups.where("member_concepts", "array_contains_any", chunk).where(
                "is_active", "==", True
            )
            for snapshot in query.stream():
                group = ConceptGroup.model_validate(snapshot.to_dict() or {})
                groups.setdefault(group.id, group)
        return sorted(groups.values(), key=lambda g: (g.level, g.name))


class FirestoreCourseStore(FirestoreBaseStore):
    """コースとコース-概念リンクを Firestore で管理する。"""

    def __init__(self, client: firestore.Client):
        super().__init__(client)
        self._courses = client.collection("courses")
        self._course_concepts = client.collection("course_concepts")

    def save_course(self, course: Course) -> None:
        self._courses.document(str(course.course_id)).set(to_document(course), merge=True)

    def get_course(self, course_id: int) -> Course | None:
        snapshot = self._courses.document(str(course_id)).get()
        if not snapshot.exists:
            return None
        return Course.model_validate(snapshot.to_dict() or {})

    def update_course(self, course_id: int, **fields: Any) -> None:
        self._courses.document(str(course_id)).set(to_firestore_value(fields), merge=True)

    def link_concept(self, link: CourseConcept) -> None:
        """(course_id, concept_id) の組で一意になるよう ID を固定して保存する。"""

        doc_id = f"{link.course_id}__{link.concept_id}"
        self._course_concepts.document(doc_id).set(to_document(link), merge=True)

    def list_course_concepts(self, course_id: int) -> list[CourseConcept]:
        """コースに紐づく有効なリンクを信頼度の高い順に返す。"""

        query = (
            self._course_concepts.where("course_id", "==", int(course_id))
            .where("is_active", "==", True)
            .order_by("confidence", direction=firestore.Query.DESCENDING)
        )
        return [
            CourseConcept.model_validate(snapshot.to_dict() or {})
            for snapshot in query.stream()
        ]


class FirestoreProgressStore(FirestoreBaseStore):
    """ユーザー×概念の SRS 進捗を Firestore で管理する。"""

    def __init__(self, client: firestore.Client):
        super().__init__(client)
        self._progress = client.collection("concept_progress")

    @staticmethod
    def _doc_id(user_id: str, concept_id: str) -> str:
        return f"{user_id}__{concept_id}"

    def get_progress(self, user_id: str, concept_id: str) -> ConceptProgress | None:
        snapshot = self._progress.document(self._doc_id(user_id, concept_id)).get()
        if not snapshot.exists:
            return None
        return ConceptProgress.model_validate(snapshot.to_dict() or {})

    def save_progress(self, progress: ConceptProgress) -> None:
        payload = to_document(progress)
        payload["total_attempts"] = normalize_non_negative_int(progress.total_attempts)
        payload["consecutive_correct"] = normalize_non_negative_int(progress.consecutive_correct)
        self._progress.document(self._doc_id(progress.user_id, progress.concept_id)).set(
            payload
        )

    def _review_query(self, user_id: str, op: str, cutoff: datetime) -> list[ConceptProgress]:
        query = (
            self._progress.where("user_id", "==", user_id)
            .where("is_active", "==", True)
            .where("next_review", op, to_iso(cutoff))
            .order_by("next_review")
        )
        return [
            ConceptProgress.model_validate(snapshot.to_dict() or {})
            for snapshot in query.stream()
        ]

    def list_due(self, user_id: str, cutoff: datetime) -> list[ConceptProgress]:
        """next_review <= cutoff の有効な進捗を復習日の早い順に返す。"""

        return self._review_query(user_id, "<=", cutoff)

    def list_overdue(self, user_id: str, cutoff: datetime) -> list[ConceptProgress]:
        """next_review < cutoff の有効な進捗を復習日の早い順に返す。"""

        return self._review_query(user_id, "<", cutoff)

    def list_for_user(self, user_id: str) -> list[ConceptProgress]:
        query = self._progress.where("user_id", "==", user_id)
        return [
            ConceptProgress.model_validate(snapshot.to_dict() or {})
            for snapshot in query.stream()
        ]

    def list_for_concepts(
        self, user_id: str, concept_ids: Sequence[str]
    ) -> dict[str, ConceptProgress]:
        result: dict[str, ConceptProgress] = {}
        for chunk in _chunked(_unique(concept_ids)):
            query = self._progress.where("user_id", "==", user_id).where(
                "concept_id", "in", chunk
            )
            for snapshot in query.stream():
                progress = ConceptProgress.model_validate(snapshot.to_dict() or {})
                result[progress.concept_id] = progress
        return result

    def list_practiced_since(self, user_id: str, since: datetime) -> list[ConceptProgress]:
        query = self._progress.where("user_id", "==", user_id).where(
            "last_practiced", ">=", to_iso(since)
        )
        return [
            ConceptProgress.model_validate(snapshot.to_dict() or {})
            for snapshot in query.stream()
        ]


class FirestoreQuestionBankStore(FirestoreBaseStore):
    """問題バンクを Firestore で管理する。書き込みは指数バックオフでリトライする。"""

    def __init__(
        self,
        client: firestore.Client,
        *,
        max_retries: int | None = None,
        backoff_base_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(client)
        self._questions = client.collection("question_bank")
        self._max_retries = max(
            1, int(max_retries if max_retries is not None else settings.question_save_max_retries)
        )
        self._backoff_base = float(
            backoff_base_seconds
            if backoff_base_seconds is not None
            else settings.question_save_backoff_base_seconds
        )
        self.sleep = sleep

    def save_question(self, item: QuestionBankItem) -> str:
        payload = to_document(item)
        payload["times_used"] = normalize_non_negative_int(item.times_used)
        last_exc: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                self._questions.document(item.id).set(payload, merge=True)
                return item.id
            except Exception as exc:
                last_exc = exc
                logger.warning(
                    "question_bank_save_failed",
                    question_id=item.id,
                    attempt=attempt + 1,
                    retries=self._max_retries,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if attempt + 1 < self._max_retries:
                    self.sleep(self._backoff_base * (2**attempt))
        raise QuestionBankWriteError(
            f"Failed to save question {item.id} after {self._max_retries} attempts",
            {"question_id": item.id, "error": str(last_exc) if last_exc else None},
        ) from last_exc

    def get_question(self, question_id: str) -> QuestionBankItem | None:
        snapshot = self._questions.document(question_id).get()
        if not snapshot.exists:
            return None
        return QuestionBankItem.model_validate(snapshot.to_dict() or {})

    def list_for_concepts(
        self, concept_ids: Sequence[str], limit: int
    ) -> list[QuestionBankItem]:
        """指定概念のいずれかを対象とする有効な問題を返す。

        使用回数の少ない順、同数なら正答率の高い順。
        """

        if limit <= 0:
            return []
        items: dict[str, QuestionBankItem] = {}
        for chunk in _chunked(_unique(concept_ids)):
            query = self._questions.where(
                "target_concepts", "array_contains_any", chunk
            ).where("is_active", "==", True)
            for snapshot in query.stream():
                item = QuestionBankItem.model_validate(snapshot.to_dict() or {})
                items.setdefault(item.id, item)
        ordered = sorted(items.values(), key=lambda q: (q.times_used, -q.success_rate))
        return ordered[:limit]

    def list_recent(self, limit: int) -> list[QuestionBankItem]:
        if limit <= 0:
            return []
        query = (
            self._questions.where("is_active", "==", True)
            .order_by("created_date", direction=firestore.Query.DESCENDING)
            .limit(limit)
        )
        return [
            QuestionBankItem.model_validate(snapshot.to_dict() or {})
            for snapshot in query.stream()
        ]

    def update_correct_answer(self, question_id: str, correct_answer: str) -> None:
        self._questions.document(question_id).set({"correct_answer": correct_answer}, merge=True)

    def count_active(self) -> int:
        return _count(self._questions.where("is_active", "==", True))

    def update_performance(
        self, question_id: str, is_correct: bool, *, now: datetime | None = None
    ) -> QuestionBankItem | None:
        """使用回数を1増やし、正答率を累積平均で更新する。"""

        item = self.get_question(question_id)
        if item is None:
            return None
        times_used = normalize_non_negative_int(item.times_used) + 1
        success_rate = (item.success_rate * (times_used - 1) + (1.0 if is_correct else 0.0)) / times_used
        item.times_used = times_used
        item.success_rate = success_rate
        item.last_used = now or datetime.now(UTC)
        self._questions.document(question_id).set(
            {
                "times_used": times_used,
                "success_rate": success_rate,
                "last_used": to_iso(item.last_used),
            },
            merge=True,
        )
        return item


class FirestoreSessionStore(FirestoreBaseStore):
    """練習セッションを Firestore で管理する。"""

    def __init__(self, client: firestore.Client):
        super().__init__(client)
        self._sessions = client.collection("practice_sessions")

    def save_session(self, session: PracticeSession) -> None:
        self._sessions.document(session.session_id).set(to_document(session))

    def get_session(self, session_id: str) -> PracticeSession | None:
        snapshot = self._sessions.document(session_id).get()
        if not snapshot.exists:
            return None
        return PracticeSession.model_validate(snapshot.to_dict() or {})

    def list_sessions_since(self, user_id: str, since: datetime) -> list[PracticeSession]:
        query = self._sessions.where("user_id", "==", user_id).where(
            "started_at", ">=", to_iso(since)
        )
        return [
            PracticeSession.model_validate(snapshot.to_dict() or {})
            for snapshot in query.stream()
        ]


class AppFirestoreStore:
    """Firestore 版のアプリ永続化ストア。"""

    def __init__(
        self,
        *,
        client: firestore.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client or firestore.Client()
        self.concepts = FirestoreConceptStore(self._client)
        self.courses = FirestoreCourseStore(self._client)
        self.progress = FirestoreProgressStore(self._client)
        self.questions = FirestoreQuestionBankStore(self._client, sleep=sleep)
        self.sessions = FirestoreSessionStore(self._client)
