from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(UTC)


class ConceptCategory(str, Enum):
    grammar = "grammar"
    vocabulary = "vocabulary"


class QuestionLevel(str, Enum):
    """CEFR レベル。定義順がそのまま難易度の昇順になる。"""

    A1 = "A1"
    A2 = "A2"
    B1 = "B1"
    B2 = "B2"
    C1 = "C1"
    C2 = "C2"

    @property
    def rank(self) -> int:
        return list(QuestionLevel).index(self)


class PracticeMode(str, Enum):
    normal = "normal"
    previous = "previous"
    drill = "drill"


class CourseType(str, Enum):
    new = "new"
    review = "review"
    mixed = "mixed"


class MistakeType(str, Enum):
    typo = "typo"
    grammar = "grammar"
    vocab = "vocab"
    word_order = "word_order"
    incomplete_answer = "incomplete_answer"


class QuestionType(str, Enum):
    q_a = "q_a"
    translation_pl = "translation_pl"
    translation_en = "translation_en"
    basic_cloze = "basic_cloze"
    multi_cloze = "multi_cloze"
    vocab_choice = "vocab_choice"
    multi_select = "multi_select"
    case_transform = "case_transform"
    sentence_transform = "sentence_transform"
    word_arrangement = "word_arrangement"
    conjugation_table = "conjugation_table"
    aspect_pairs = "aspect_pairs"
    diminutive_forms = "diminutive_forms"
    dialogue_complete = "dialogue_complete"
    scenario_response = "scenario_response"
    cultural_context = "cultural_context"
    visual_vocabulary = "visual_vocabulary"
    audio_comprehension = "audio_comprehension"


class ExtractionStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    reviewed = "reviewed"


class DrillType(str, Enum):
    weakness = "weakness"
    course = "course"
    group = "group"
    groups = "groups"


class CompletionReason(str, Enum):
    completed = "completed"
    abandoned = "abandoned"
