from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from .common import ConceptCategory, QuestionLevel


class ExtractedConcept(BaseModel):
    """LLM がコース教材から抽出した概念候補（未保存）。"""

    name: str
    category: ConceptCategory = ConceptCategory.grammar
    description: str = ""
    examples: list[str] = Field(default_factory=list)
    # コース内のどこで見つかったか
    source_content: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    suggested_difficulty: QuestionLevel = QuestionLevel.B1


class ContentChunk(BaseModel):
    """抽出プロンプト1回分のコース教材の断片。"""

    kind: Literal["keywords", "notes", "practice", "homework"]
    content: str
    estimated_concepts: int = Field(default=1, ge=1)


class DuplicateMatch(BaseModel):
    extracted_name: str
    existing_id: str
    existing_name: str
    duplicate_type: Literal["exact", "case_insensitive"]


class ExtractionReview(BaseModel):
    course_id: int
    course_name: str
    extracted_concepts: list[ExtractedConcept] = Field(default_factory=list)
    duplicates: list[DuplicateMatch] = Field(default_factory=list)
    total_extracted: int = 0
    high_confidence_count: int = 0


class ReviewDecision(BaseModel):
    action: Literal["approve", "edit", "link", "reject"]
    extracted_concept: ExtractedConcept
    # link 時の既存概念 ID
    target_concept_id: str | None = None
    # edit 時に上書きするフィールド
    edited_fields: dict[str, object] = Field(default_factory=dict)


class ReviewOutcome(BaseModel):
    created: list[str] = Field(default_factory=list)
    linked: list[str] = Field(default_factory=list)
    rejected: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors
