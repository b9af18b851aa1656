"""Pytest configuration shared by the backend tests.

Firestore はインメモリのフェイク、LLM は `complete(prompt)` を持つスタブに
差し替える。設定はテスト用に非 strict・ローカル LLM へ寄せておく。
"""

from __future__ import annotations

import os
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable

import pytest

_ROOT = Path(__file__).resolve().parents[1]
for _path in (_ROOT, _ROOT / "apps" / "backend"):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

os.environ.setdefault("STRICT_MODE", "false")
os.environ.setdefault("LLM_PROVIDER", "local")
os.environ.setdefault("ENVIRONMENT", "development")

from tests.firestore_fakes import FakeFirestoreClient  # noqa: E402

# テストで共通に使う基準時刻（UTC の昼）
NOW = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def fake_client() -> FakeFirestoreClient:
    return FakeFirestoreClient()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def store(fake_client: FakeFirestoreClient, sleeps: list[float]):
    from polish_practice.store.firestore_store import AppFirestoreStore

    return AppFirestoreStore(client=fake_client, sleep=sleeps.append)


@pytest.fixture
def make_concept() -> Callable[..., Any]:
    from polish_practice.models.concept import Concept

    def _make(concept_id: str, **overrides: Any) -> Concept:
        payload: dict[str, Any] = {
            "id": concept_id,
            "name": overrides.pop("name", f"Concept {concept_id}"),
            "category": "grammar",
            "description": f"Description of {concept_id}",
            "examples": [f"Przykład {concept_id}"],
        }
        payload.update(overrides)
        return Concept.model_validate(payload)

    return _make


@pytest.fixture
def make_progress() -> Callable[..., Any]:
    from polish_practice.models.progress import ConceptProgress

    def _make(concept_id: str, **overrides: Any) -> ConceptProgress:
        payload: dict[str, Any] = {
            "user_id": "default",
            "concept_id": concept_id,
            "next_review": NOW,
        }
        payload.update(overrides)
        return ConceptProgress.model_validate(payload)

    return _make


@pytest.fixture
def make_question() -> Callable[..., Any]:
    from polish_practice.models.question import QuestionBankItem

    def _make(question_id: str, targets: list[str], **overrides: Any) -> QuestionBankItem:
        payload: dict[str, Any] = {
            "id": question_id,
            "question": f"Question {question_id}?",
            "correct_answer": f"answer {question_id}",
            "target_concepts": targets,
            "source": "manual",
            "created_date": datetime(2024, 1, 1, tzinfo=UTC),
        }
        payload.update(overrides)
        return QuestionBankItem.model_validate(payload)

    return _make
