from __future__ import annotations

import math
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


def normalize_non_negative_int(value: Any) -> int:
    """与えられた値を非負整数に正規化する。

    試行回数や使用回数のカウンタは壊れた値が書き込まれると平均計算が
    破綻するため、保存前にゼロ以上へ矯正しておく。"""

    try:
        ivalue = int(value)
    except (TypeError, ValueError):
        return 0
    return ivalue if ivalue >= 0 else 0


def clamp_unit(value: Any, default: float = 0.0) -> float:
    """0.0〜1.0 に収める。NaN や数値化できない値は default を返す。"""

    try:
        fvalue = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(fvalue):
        return default
    return max(0.0, min(1.0, fvalue))


def to_iso(value: datetime) -> str:
    """UTC・マイクロ秒固定の ISO 文字列へ変換する。

    Firestore 上で文字列のまま範囲比較するため、桁数とタイムゾーン表記を
    揃えて辞書順と時系列順を一致させる。naive な値は UTC とみなす。
    """

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def to_firestore_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: to_firestore_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_firestore_value(item) for item in value]
    return value


def to_document(model: BaseModel, **extra: Any) -> dict[str, Any]:
    """pydantic モデルを Firestore へ保存できる dict に変換する。"""

    payload = to_firestore_value(model.model_dump())
    payload.update(to_firestore_value(extra))
    return payload
