"""コース教材から学習概念を抽出し、レビュー結果を永続化するフロー。"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any, Optional, Sequence, TypedDict

from langgraph.graph import END, START, StateGraph
from pydantic import ValidationError as PydanticValidationError

from ..config import settings
from ..errors import ConceptExtractionError, LLMServiceError, PracticeError
from ..logging import logger
from ..models.common import ConceptCategory, ExtractionStatus, QuestionLevel
from ..models.concept import Concept, Course, CourseConcept
from ..models.extraction import (
    ContentChunk,
    DuplicateMatch,
    ExtractedConcept,
    ExtractionReview,
    ReviewDecision,
    ReviewOutcome,
)
from ..observability import span
from ..providers import get_llm_provider
from ..store.common import clamp_unit
from ..store.firestore_store import AppFirestoreStore
from .content_chunker import chunk_course, needs_chunking
from .llm_json import parse_json_object

HIGH_CONFIDENCE_THRESHOLD = 0.8

_RESPONSE_FORMAT = (
    'Respond with JSON only: {"concepts": [{"name": str, "category": "grammar"|"vocabulary", '
    '"description": str, "examples": [str], "sourceContent": str, '
    '"confidence": 0-1, "suggestedDifficulty": "A1".."C2"}]}'
)


class _ExtractionState(TypedDict, total=False):
    course_id: int
    course: Course
    chunks: list[ContentChunk]
    concepts: list[ExtractedConcept]
    duplicates: list[DuplicateMatch]


def normalize_extracted_concept(raw: dict[str, Any]) -> ExtractedConcept | None:
    """LLM の1件を検証済みの候補へ正規化する。名前が無ければ捨てる。

    - 未知のカテゴリは grammar
    - 数値化できない信頼度は 0.5、それ以外は 0..1 に丸める
    - 未知の難易度は B1
    """

    name = str(raw.get("name") or "").strip()
    if not name:
        return None
    category_raw = str(raw.get("category") or "").strip().lower()
    category = (
        ConceptCategory(category_raw)
        if category_raw in {c.value for c in ConceptCategory}
        else ConceptCategory.grammar
    )
    difficulty_raw = str(raw.get("suggestedDifficulty") or raw.get("difficulty") or "").strip().upper()
    difficulty = (
        QuestionLevel(difficulty_raw)
        if difficulty_raw in {lvl.value for lvl in QuestionLevel}
        else QuestionLevel.B1
    )
    examples = raw.get("examples")
    return ExtractedConcept(
        name=name,
        category=category,
        description=str(raw.get("description") or "").strip(),
        examples=[str(e) for e in examples] if isinstance(examples, list) else [],
        source_content=str(raw.get("sourceContent") or "").strip(),
        confidence=clamp_unit(raw.get("confidence"), default=0.5),
        suggested_difficulty=difficulty,
    )


def merge_extracted_concepts(concepts: Sequence[ExtractedConcept]) -> list[ExtractedConcept]:
    """チャンク間で同名・同カテゴリの候補を1件にまとめ、信頼度の高い方を残す。"""

    merged: dict[tuple[str, ConceptCategory], ExtractedConcept] = {}
    for concept in concepts:
        key = (concept.name.strip().casefold(), concept.category)
        kept = merged.get(key)
        if kept is None or concept.confidence > kept.confidence:
            merged[key] = concept
    return list(merged.values())


class ConceptExtractionFlow:
    """Concept extraction and review flow orchestrated with LangGraph.

    コースを検証 → 長ければチャンク分割 → LLM で概念抽出 → 既存概念との重複検出 →
    コースの抽出状態更新、の順でグラフを実行し、レビュー用データを返す。レビュー結果の反映は
    `apply_review_decisions` が担う。
    """

    def __init__(
        self,
        store: AppFirestoreStore,
        *,
        model: Optional[str] = None,
        llm: Any | None = None,
    ) -> None:
        self._store = store
        self._llm = llm or get_llm_provider(model_override=model)

    def _prompt(self, course: Course) -> str:
        return (
            "Extract the Polish grammar and vocabulary concepts taught in this lesson.\n"
            f"Keywords: {', '.join(course.keywords)}\n"
            f"New words: {', '.join(course.new_words) or 'None'}\n"
            f"Notes:\n{course.notes}\n"
            f"Practice:\n{course.practice}\n"
            f"Homework:\n{course.homework or 'None'}\n"
            + _RESPONSE_FORMAT
        )

    def _chunk_prompt(self, course: Course, chunk: ContentChunk, index: int, total: int) -> str:
        labels = {
            "keywords": "Keywords and new words",
            "notes": "Notes",
            "practice": "Practice",
            "homework": "Homework",
        }
        return (
            "Extract the Polish grammar and vocabulary concepts taught in this part of a lesson "
            f"(part {index} of {total}).\n"
            f"Lesson keywords: {', '.join(course.keywords)}\n"
            f"{labels[chunk.kind]}:\n{chunk.content}\n"
            + _RESPONSE_FORMAT
        )

    def _ask(self, course: Course, prompt: str, part: str) -> list[ExtractedConcept]:
        with span(
            trace=None,
            name="concept_extraction.llm",
            input={"course_id": course.course_id, "part": part, "prompt_chars": len(prompt)},
        ):
            raw = self._llm.complete(prompt)
        try:
            data = parse_json_object(raw)
        except LLMServiceError as exc:
            raise ConceptExtractionError(
                f"Concept extraction failed for course {course.course_id}: {exc.message}",
                {"course_id": course.course_id, "part": part},
            ) from exc
        items = data.get("concepts")
        if not isinstance(items, list):
            raise ConceptExtractionError(
                "LLM response is missing the concepts array",
                {"course_id": course.course_id, "part": part},
            )
        concepts: list[ExtractedConcept] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            concept = normalize_extracted_concept(item)
            if concept is not None:
                concepts.append(concept)
        return concepts

    # --- graph nodes ---
    def _load_course(self, state: _ExtractionState) -> dict[str, Any]:
        course_id = state["course_id"]
        course = self._store.courses.get_course(course_id)
        if course is None:
            raise ConceptExtractionError(
                f"Course with ID {course_id} not found", {"course_id": course_id}
            )
        if not course.notes or not course.practice or not course.keywords:
            raise ConceptExtractionError(
                f"Course {course_id} is missing required fields (notes, practice, or keywords)",
                {"course_id": course_id},
            )
        return {"course": course}

    def _plan_chunks(self, state: _ExtractionState) -> dict[str, Any]:
        course = state["course"]
        if not needs_chunking(course, settings.extraction_chunk_max_chars):
            return {"chunks": []}
        chunks = chunk_course(
            course,
            max_chars=settings.extraction_chunk_max_chars,
            min_chars=settings.extraction_chunk_min_chars,
            overlap=settings.extraction_chunk_overlap_chars,
        )
        logger.info(
            "concept_extraction_chunked",
            course_id=course.course_id,
            chunks=len(chunks),
            estimated_concepts=sum(c.estimated_concepts for c in chunks),
        )
        return {"chunks": chunks}

    def _extract(self, state: _ExtractionState) -> dict[str, Any]:
        course = state["course"]
        chunks = state.get("chunks") or []
        if not chunks:
            return {"concepts": self._ask(course, self._prompt(course), "course")}

        found: list[ExtractedConcept] = []
        for index, chunk in enumerate(chunks, start=1):
            prompt = self._chunk_prompt(course, chunk, index, len(chunks))
            found.extend(self._ask(course, prompt, f"{chunk.kind}:{index}"))
        return {"concepts": merge_extracted_concepts(found)}

    def _detect_duplicates(self, state: _ExtractionState) -> dict[str, Any]:
        duplicates: list[DuplicateMatch] = []
        for concept in state.get("concepts", []):
            duplicates.extend(self.find_duplicates(concept))
        return {"duplicates": duplicates}

    def _mark_completed(self, state: _ExtractionState) -> dict[str, Any]:
        self._store.courses.update_course(
            state["course_id"],
            extraction_status=ExtractionStatus.completed,
            extraction_date=datetime.now(UTC),
            extracted_concepts=[c.name for c in state.get("concepts", [])],
        )
        return {}

    def _build_graph(self) -> Any:
        graph = StateGraph(_ExtractionState)
        graph.add_node("load_course", self._load_course)
        graph.add_node("plan_chunks", self._plan_chunks)
        graph.add_node("extract", self._extract)
        graph.add_node("detect_duplicates", self._detect_duplicates)
        graph.add_node("mark_completed", self._mark_completed)
        graph.add_edge(START, "load_course")
        graph.add_edge("load_course", "plan_chunks")
        graph.add_edge("plan_chunks", "extract")
        graph.add_edge("extract", "detect_duplicates")
        graph.add_edge("detect_duplicates", "mark_completed")
        graph.add_edge("mark_completed", END)
        return graph.compile()

    # --- public API ---
    def find_duplicates(self, concept: ExtractedConcept) -> list[DuplicateMatch]:
        """同カテゴリ内で名前が（大文字小文字を無視して）一致する既存概念。"""

        matches: list[DuplicateMatch] = []
        for existing in self._store.concepts.find_concepts_by_name(
            concept.name, category=concept.category.value
        ):
            if not existing.is_active:
                continue
            matches.append(
                DuplicateMatch(
                    extracted_name=concept.name,
                    existing_id=existing.id,
                    existing_name=existing.name,
                    duplicate_type=(
                        "exact" if existing.name.strip() == concept.name.strip() else "case_insensitive"
                    ),
                )
            )
        return matches

    def extract_from_course(self, course_id: int) -> ExtractionReview:
        out_state = self._build_graph().invoke({"course_id": course_id})
        course: Course = out_state["course"]
        concepts: list[ExtractedConcept] = out_state.get("concepts", [])
        review = ExtractionReview(
            course_id=course_id,
            course_name=f"Course {course_id} - {', '.join(course.keywords)}",
            extracted_concepts=concepts,
            duplicates=out_state.get("duplicates", []),
            total_extracted=len(concepts),
            high_confidence_count=sum(
                1 for c in concepts if c.confidence > HIGH_CONFIDENCE_THRESHOLD
            ),
        )
        logger.info(
            "concept_extraction_completed",
            course_id=course_id,
            total_extracted=review.total_extracted,
            duplicates=len(review.duplicates),
        )
        return review

    def _link(self, concept_id: str, course_id: int, extracted: ExtractedConcept) -> None:
        self._store.courses.link_concept(
            CourseConcept(
                course_id=course_id,
                concept_id=concept_id,
                confidence=extracted.confidence,
                source_content=extracted.source_content,
            )
        )

    def _create_concept(self, course_id: int, decision: ReviewDecision) -> str:
        candidate = decision.extracted_concept
        if decision.action == "edit" and decision.edited_fields:
            candidate = ExtractedConcept.model_validate(
                candidate.model_dump() | decision.edited_fields
            )
        duplicates = self.find_duplicates(candidate)
        if duplicates:
            raise ConceptExtractionError(
                f'Concept "{candidate.name}" already exists ({duplicates[0].existing_id})',
                {"existing_id": duplicates[0].existing_id},
            )
        concept = Concept(
            id=str(uuid.uuid4()),
            name=candidate.name,
            category=candidate.category,
            description=candidate.description,
            examples=candidate.examples,
            difficulty=candidate.suggested_difficulty,
            confidence=candidate.confidence,
            created_from=[str(course_id)],
        )
        self._store.concepts.save_concept(concept)
        self._link(concept.id, course_id, candidate)
        return concept.id

    def apply_review_decisions(
        self, course_id: int, decisions: Sequence[ReviewDecision]
    ) -> ReviewOutcome:
        """レビュー結果を反映する。1件の失敗は errors に記録して残りを続行する。"""

        if self._store.courses.get_course(course_id) is None:
            raise ConceptExtractionError(
                f"Course with ID {course_id} not found", {"course_id": course_id}
            )
        outcome = ReviewOutcome()
        for decision in decisions:
            name = decision.extracted_concept.name
            try:
                if decision.action == "reject":
                    outcome.rejected += 1
                elif decision.action in {"approve", "edit"}:
                    outcome.created.append(self._create_concept(course_id, decision))
                elif decision.action == "link":
                    target = decision.target_concept_id or ""
                    if not target or self._store.concepts.add_course_source(target, course_id) is None:
                        outcome.errors.append(f"Concept with ID {target} not found for linking")
                        continue
                    self._link(target, course_id, decision.extracted_concept)
                    outcome.linked.append(target)
            except (PracticeError, PydanticValidationError) as exc:
                message = f'Error processing concept "{name}": {exc}'
                logger.warning("concept_review_decision_failed", course_id=course_id, error=message)
                outcome.errors.append(message)

        self._store.courses.update_course(course_id, extraction_status=ExtractionStatus.reviewed)
        logger.info(
            "concept_review_applied",
            course_id=course_id,
            created=len(outcome.created),
            linked=len(outcome.linked),
            rejected=outcome.rejected,
            errors=len(outcome.errors),
        )
        return outcome
