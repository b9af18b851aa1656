"""LLM を使う処理フロー（概念抽出・問題生成・回答採点）。"""

from .answer_validation import AnswerValidationFlow, validate_client_side
from .concept_extraction import ConceptExtractionFlow
from .llm_json import parse_json_object, strip_code_fences
from .question_generation import QuestionGenerationFlow

__all__ = [
    "AnswerValidationFlow",
    "ConceptExtractionFlow",
    "QuestionGenerationFlow",
    "parse_json_object",
    "strip_code_fences",
    "validate_client_side",
]
