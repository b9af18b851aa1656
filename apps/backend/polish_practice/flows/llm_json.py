from __future__ import annotations

import json
import re
from typing import Any

from ..errors import LLMServiceError

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Remove surrounding Markdown code fences like ```json ... ``` if present.

    入力文字列に含まれる Markdown のコードフェンスを取り除き中身を返す。
    """

    t = str(text or "").strip()
    match = _FENCE_RE.search(t)
    if match:
        return match.group(1).strip()
    return t


def parse_json_object(text: str) -> dict[str, Any]:
    """LLM 出力から JSON オブジェクトを1件取り出す。

    コードフェンスや前後の説明文が付いていても、最初の `{` から最後の `}`
    までを再解釈する。オブジェクトが得られなければ LLMServiceError。
    """

    cleaned = strip_code_fences(text)
    if not cleaned:
        raise LLMServiceError("LLM returned empty output")
    candidates = [cleaned]
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        candidates.append(cleaned[start : end + 1])
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise LLMServiceError(
        "LLM output is not a JSON object", {"preview": cleaned[:200]}
    )
