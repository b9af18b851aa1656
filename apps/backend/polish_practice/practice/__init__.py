"""練習エンジンとセッション管理。"""

from .engine import ConceptPracticeEngine, detect_question_type, infer_difficulty
from .ranking import build_due_queue, rank_concepts_by_weakness, weakness_score
from .sessions import PracticeSessionService

__all__ = [
    "ConceptPracticeEngine",
    "PracticeSessionService",
    "build_due_queue",
    "detect_question_type",
    "infer_difficulty",
    "rank_concepts_by_weakness",
    "weakness_score",
]
