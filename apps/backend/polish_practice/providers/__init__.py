"""LLM プロバイダの共有ステートと公開API。

抽出・問題生成・採点の各フローは温度やモデルが異なるため、クライアントは
`(provider, model, temperature)` ごとに1つだけ生成して使い回す。
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Any

LLMCacheKey = tuple[str, str, float | None]

_LLM_INSTANCES: dict[LLMCacheKey, Any] = {}
# 全クライアント共通のタイムアウト制御用プール
_llm_executor: ThreadPoolExecutor = ThreadPoolExecutor(
    max_workers=4, thread_name_prefix="polish-llm"
)


def _get_llm_instance(key: LLMCacheKey) -> Any | None:
    return _LLM_INSTANCES.get(key)


def _set_llm_instance(instance: Any | None, key: LLMCacheKey | None = None) -> None:
    """`key` のクライアントを登録する。`instance=None` なら全件破棄する。"""

    if instance is None:
        _LLM_INSTANCES.clear()
        return
    if key is None:
        raise ValueError("cache key is required when registering an LLM client")
    _LLM_INSTANCES[key] = instance


def _get_llm_executor() -> ThreadPoolExecutor:
    # shutdown_providers の後でも呼び出せるよう作り直す
    global _llm_executor
    if getattr(_llm_executor, "_shutdown", False):
        _llm_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="polish-llm")
    return _llm_executor


from .llm import get_llm_provider, shutdown_providers

__all__ = [
    "get_llm_provider",
    "shutdown_providers",
]
