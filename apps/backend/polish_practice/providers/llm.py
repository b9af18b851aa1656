"""LLM プロバイダと Langfuse 連携を司るモジュール。"""

from __future__ import annotations

import contextvars
import hashlib
import inspect
import json
import time
from concurrent.futures import TimeoutError as FuturesTimeout
from contextlib import contextmanager
from typing import Any, Iterator

from openai import OpenAI

from ..config import settings
from ..errors import LLMServiceError
from ..logging import logger
from ..observability import get_langfuse, span
from . import LLMCacheKey, _get_llm_executor, _get_llm_instance, _set_llm_instance

# OPENAI_API_KEY=test-key のときに返す固定応答。抽出/生成/採点の各フローが解釈できる形にしておく。
_TEST_KEY_RESPONSE = json.dumps(
    {
        "concepts": [
            {
                "name": "Genitive case after negation",
                "category": "grammar",
                "description": "Direct objects take the genitive after a negated verb.",
                "examples": ["Nie mam czasu."],
                "sourceContent": "Nie mam czasu.",
                "confidence": 0.9,
                "suggestedDifficulty": "A2",
            }
        ],
        "question": "Przetłumacz na polski: I don't have time.",
        "correctAnswer": "Nie mam czasu.",
        "questionType": "translation_pl",
        "options": None,
        "isCorrect": False,
        "feedback": "Check the case after negation.",
        "confidenceLevel": 0.5,
        "errorType": "grammar",
        "keywords": ["negation", "genitive"],
    },
    ensure_ascii=False,
)


class _LLMBase:
    """LLM クライアントが実装すべき最小インターフェース。"""

    def complete(self, prompt: str) -> str:  # pragma: no cover - interface definition
        raise NotImplementedError


class _LocalEchoLLM(_LLMBase):
    """外部依存が利用できない環境でのフォールバック LLM。常に空文字を返す。"""

    def complete(self, prompt: str) -> str:
        logger.info(
            "llm_complete_call",
            provider="local",
            model="echo",
            prompt_chars=len(prompt),
        )
        return ""


def _prepare_span_input(model: str, prompt: str) -> dict[str, Any]:
    """Langfuse スパンに記録する入力情報を生成する。"""

    if settings.langfuse_log_full_prompt:
        maxc = max(0, int(settings.langfuse_prompt_max_chars))
        return {
            "model": model,
            "prompt_chars": len(prompt),
            "prompt": prompt[:maxc],
            "prompt_sha256": hashlib.sha256(
                prompt.encode("utf-8", errors="ignore")
            ).hexdigest(),
        }
    return {
        "model": model,
        "prompt_chars": len(prompt),
        "prompt_preview": prompt[:500],
    }


@contextmanager
def _langfuse_span(name: str, model: str, prompt: str) -> Iterator[Any]:
    """Langfuse span を開始し、呼び出し元へコンテキストを提供する。"""

    trace_factory = getattr(get_langfuse(), "trace", None)
    trace = None if trace_factory is None else trace_factory(name="LLM call")
    with span(trace=trace, name=name, input=_prepare_span_input(model, prompt)) as current:
        yield current


def _update_span_output(span_obj: Any, content: str) -> None:
    if span_obj is None:
        return
    limited = content[: max(0, int(settings.langfuse_prompt_max_chars))]
    try:
        if hasattr(span_obj, "update"):
            span_obj.update(output=limited)
        elif hasattr(span_obj, "set_attribute"):
            span_obj.set_attribute("output", limited)  # type: ignore[call-arg]
    except Exception as exc:  # pragma: no cover - 観測失敗で本処理を止めない
        logger.debug("langfuse_span_update_failed", error=str(exc))


class _OpenAILLM(_LLMBase):  # pragma: no cover - オンライン利用が前提
    """OpenAI Responses API を利用する LLM ラッパー。"""

    def __init__(self, *, api_key: str, model: str, temperature: float | None = None) -> None:
        self._client = OpenAI(api_key=api_key)
        self._model = model
        self._api_key = api_key
        self._temperature = 0.2 if temperature is None else float(max(0.0, min(1.0, temperature)))

    def _extract_text(self, resp: Any) -> str:
        """Responses API のレスポンスから本文を抜き出す。"""

        txt = getattr(resp, "output_text", None)
        if isinstance(txt, str) and txt.strip():
            return txt.strip()
        data = resp if isinstance(resp, dict) else getattr(resp, "model_dump", lambda: {})()
        for item in data.get("output") or []:
            for content in (item or {}).get("content") or []:
                text = (content or {}).get("text")
                if isinstance(text, str) and text.strip():
                    return text.strip()
        return ""

    def _create(self, prompt: str, *, include_temperature: bool) -> Any:
        try:
            param_names = set(inspect.signature(self._client.responses.create).parameters)
        except (TypeError, ValueError):
            param_names = set()
        kwargs: dict[str, Any] = {
            "model": self._model,
            "input": prompt,
            "max_output_tokens": int(settings.llm_max_tokens),
        }
        if "timeout" in param_names:
            kwargs["timeout"] = settings.llm_timeout_ms / 1000.0
        if include_temperature:
            kwargs["temperature"] = self._temperature
        return self._client.responses.create(**kwargs)

    def complete(self, prompt: str) -> str:
        logger.info(
            "llm_complete_call",
            provider="openai",
            model=self._model,
            prompt_chars=len(prompt),
        )
        if self._api_key == "test-key":
            out = _TEST_KEY_RESPONSE
            logger.info(
                "llm_complete_result",
                provider="openai",
                model=self._model,
                content_chars=len(out),
            )
            return out

        with _langfuse_span("openai.responses.create", self._model, prompt) as current_span:
            try:
                resp = self._create(prompt, include_temperature=True)
            except Exception as exc:
                low = (str(exc) or "").lower()
                # 推論系モデルは temperature を受け付けないため外して再送する
                if "temperature" not in low or "support" not in low:
                    raise
                logger.info(
                    "llm_complete_retry_without_temperature",
                    provider="openai",
                    model=self._model,
                    reason=str(exc)[:200],
                )
                resp = self._create(prompt, include_temperature=False)
            content = self._extract_text(resp)
            _update_span_output(current_span, content)
        logger.info(
            "llm_complete_result",
            provider="openai",
            model=self._model,
            content_chars=len(content),
            preview=content[:120],
        )
        return content


def _classify_failure(exc: Exception | None) -> tuple[str, str]:
    """失敗理由を (メッセージ接頭辞, reason_code) に分類する。"""

    text = (str(exc) or "").lower() if exc else ""
    etype = type(exc).__name__.lower() if exc else ""
    if isinstance(exc, FuturesTimeout) or "timeout" in text:
        return "LLM timeout", "TIMEOUT"
    if "rate limit" in text or "too many requests" in text or "429" in text or "ratelimit" in etype:
        return "LLM failure", "RATE_LIMIT"
    if "invalid api key" in text or "unauthorized" in text or "401" in text or "auth" in etype:
        return "LLM failure", "AUTH"
    if "unexpected keyword argument" in text or "unsupported parameter" in text:
        return "LLM failure", "PARAM_UNSUPPORTED"
    return "LLM failure", "UNKNOWN"


def _llm_with_policy(llm: _LLMBase) -> _LLMBase:
    """タイムアウトとリトライを付与した LLM ラッパーを返す。"""

    class _Wrapped(_LLMBase):
        def complete(self, prompt: str) -> str:
            executor = _get_llm_executor()
            retries = max(1, settings.llm_max_retries)
            last_exc: Exception | None = None
            for attempt in range(1, retries + 1):
                ctx = contextvars.copy_context()
                future = executor.submit(ctx.run, llm.complete, prompt)
                try:
                    result = future.result(timeout=settings.llm_timeout_ms / 1000.0)
                    if result == "":
                        logger.info("llm_complete_empty", attempt=attempt, retries=retries)
                    return result
                except Exception as exc:
                    last_exc = exc
                    future.cancel()
                    logger.info(
                        "llm_complete_error",
                        attempt=attempt,
                        retries=retries,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    if attempt < retries:
                        time.sleep(0.1 * attempt)
            logger.info(
                "llm_complete_failed_all_retries",
                error=str(last_exc) if last_exc else None,
                error_type=(type(last_exc).__name__ if last_exc else None),
            )
            if settings.strict_mode:
                base_msg, reason_code = _classify_failure(last_exc)
                etype = type(last_exc).__name__ if last_exc else "None"
                detail = (str(last_exc) or "")[:256] if last_exc else ""
                raise LLMServiceError(
                    f"{base_msg} (reason_code={reason_code}, error_type={etype}, detail={detail})",
                    {"reason_code": reason_code},
                ) from last_exc
            return ""

    return _Wrapped()


def _local_fallback(reason: str, key: LLMCacheKey) -> _LLMBase:
    logger.info("llm_provider_select", provider="local", reason=reason)
    wrapped = _llm_with_policy(_LocalEchoLLM())
    _set_llm_instance(wrapped, key)
    return wrapped


def get_llm_provider(
    *,
    model_override: str | None = None,
    temperature_override: float | None = None,
) -> Any:
    """設定値に応じた LLM クライアントを返す。

    解決後の `(provider, model, temperature)` ごとにクライアントを共有するため、
    同じ温度で呼ぶフロー同士は同一インスタンスを使う。strict モードでは
    設定不備を例外で知らせ、非 strict ではローカルの空応答 LLM に退避する。
    """

    provider = (settings.llm_provider or "").lower()
    model = model_override or settings.llm_model
    temperature = (
        temperature_override if temperature_override is not None else settings.llm_temperature
    )
    key: LLMCacheKey = (provider, model, temperature)
    instance = _get_llm_instance(key)
    if instance is not None:
        return instance

    if provider in {"", "local"}:
        if settings.strict_mode:
            raise RuntimeError("LLM_PROVIDER must be 'openai' in strict mode")
        return _local_fallback("configured", key)

    if provider != "openai":
        if settings.strict_mode:
            raise RuntimeError(f"Unknown LLM provider: {provider}")
        return _local_fallback("unknown_provider", key)

    api_key = settings.openai_api_key
    if not api_key:
        if settings.strict_mode:
            raise RuntimeError("OPENAI_API_KEY is required for LLM_PROVIDER=openai (strict mode)")
        return _local_fallback("missing_api_key", key)

    llm = _OpenAILLM(api_key=api_key, model=model, temperature=temperature)
    logger.info("llm_provider_select", provider="openai", model=model, temperature=temperature)
    wrapped = _llm_with_policy(llm)
    _set_llm_instance(wrapped, key)
    return wrapped


def shutdown_providers() -> None:
    """共有スレッドプールとキャッシュ済みの LLM クライアントを解放する。"""

    _get_llm_executor().shutdown(wait=False, cancel_futures=True)
    _set_llm_instance(None)
