from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from .common import ConceptCategory, CourseType, ExtractionStatus, QuestionLevel, utcnow


class Concept(BaseModel):
    """学習の最小単位（語彙または文法事項）。習熟度は ConceptProgress で別管理する。"""

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    category: ConceptCategory
    description: str = ""
    examples: list[str] = Field(default_factory=list)
    prerequisites: list[str] = Field(default_factory=list)
    related_concepts: list[str] = Field(default_factory=list)
    difficulty: QuestionLevel = QuestionLevel.A1
    is_active: bool = True
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    # 抽出元コース ID（文字列で保持）
    created_from: list[str] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utcnow)


class ConceptGroup(BaseModel):
    id: str = Field(min_length=1)
    name: str
    description: str = ""
    member_concepts: list[str] = Field(default_factory=list)
    parent_group: str | None = None
    child_groups: list[str] = Field(default_factory=list)
    group_type: Literal["vocabulary", "grammar", "mixed"] = "mixed"
    level: int = Field(default=1, ge=1, le=5)
    difficulty: QuestionLevel = QuestionLevel.A1
    is_active: bool = True


class Course(BaseModel):
    course_id: int
    date: datetime = Field(default_factory=utcnow)
    keywords: list[str] = Field(default_factory=list)
    course_type: CourseType = CourseType.new
    notes: str = ""
    practice: str = ""
    homework: str | None = None
    new_words: list[str] = Field(default_factory=list)
    extraction_status: ExtractionStatus = ExtractionStatus.pending
    extraction_date: datetime | None = None
    extracted_concepts: list[str] = Field(default_factory=list)


class CourseConcept(BaseModel):
    """コースと概念の対応。(course_id, concept_id) の組で一意。"""

    course_id: int
    concept_id: str
    extracted_date: datetime = Field(default_factory=utcnow)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    is_active: bool = True
    source_content: str = ""
