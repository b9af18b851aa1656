"""Langfuse 連携（任意）。無効時はすべて no-op として振る舞う。"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from .config import settings
from .logging import logger

try:  # pragma: no cover - optional dependency in tests
    from langfuse import Langfuse
except ImportError:  # pragma: no cover
    Langfuse = None  # type: ignore


_langfuse_client: Any | None = None


def is_langfuse_enabled() -> bool:
    if not getattr(settings, "langfuse_enabled", False):
        return False
    if Langfuse is None:
        if settings.strict_mode:
            raise RuntimeError("langfuse package is required when LANGFUSE_ENABLED=true (strict mode)")
        return False
    if not (settings.langfuse_public_key and settings.langfuse_secret_key and settings.langfuse_host):
        if settings.strict_mode:
            raise RuntimeError("LANGFUSE_PUBLIC_KEY/SECRET_KEY/HOST are required when LANGFUSE_ENABLED=true (strict mode)")
        return False
    return True


def get_langfuse() -> Any | None:
    global _langfuse_client
    if _langfuse_client is not None:
        return _langfuse_client
    if not is_langfuse_enabled():
        return None
    try:
        _langfuse_client = Langfuse(
            public_key=settings.langfuse_public_key,  # type: ignore[arg-type]
            secret_key=settings.langfuse_secret_key,  # type: ignore[arg-type]
            host=settings.langfuse_host,  # type: ignore[arg-type]
            release=settings.langfuse_release,
        )
        return _langfuse_client
    except Exception as exc:  # pragma: no cover - init happens once
        if settings.strict_mode:
            raise
        logger.warning("langfuse_init_failed", error=repr(exc))
        return None


def _set_span_field(s: Any, key: str, value: Any) -> None:
    """v3 の update() を優先し、未対応クライアントには属性で記録する。"""

    try:
        if hasattr(s, "update"):
            s.update(**{key: value})
        elif hasattr(s, "set_attribute"):
            s.set_attribute(key, value)  # type: ignore[call-arg]
    except Exception as exc:  # pragma: no cover - 観測失敗で本処理を止めない
        logger.warning("langfuse_span_update_failed", field=key, error=repr(exc))


@contextmanager
def span(
    *,
    trace: Any | None,
    name: str,
    input: Optional[Any] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> Iterator[Any | None]:
    """名前付きスパンを開始する。Langfuse 無効時は None を yield する。"""

    lf = get_langfuse()
    start = time.time()
    # v3: current span API
    if lf is not None and (hasattr(lf, "start_as_current_span") or hasattr(lf, "start_span")):
        try:
            cm = lf.start_as_current_span(name=name) if hasattr(lf, "start_as_current_span") else lf.start_span(name=name)  # type: ignore[assignment]
        except Exception as exc:  # pragma: no cover
            logger.warning("langfuse_span_create_failed", error=repr(exc))
            cm = None
        if cm is None:
            yield None
            return
        with cm as s:
            if input is not None:
                _set_span_field(s, "input", str(input)[:40000])
            if metadata:
                _set_span_field(s, "metadata", dict(metadata))
            try:
                yield s
            except Exception as exc:
                _set_span_field(s, "metadata", {"error": str(exc)[:500]})
                raise
            finally:
                _set_span_field(s, "metadata", {"duration_ms": (time.time() - start) * 1000.0})
        return
    # v2: trace.span API
    if lf is None or trace is None:
        yield None
        return
    s: Any | None = None
    try:
        s = trace.span(name=name, input=input, metadata=metadata or {})
    except Exception as exc:  # pragma: no cover
        logger.warning("langfuse_span_create_failed", error=repr(exc))
    try:
        yield s
    finally:
        if s is not None:
            _set_span_field(s, "metadata", (metadata or {}) | {"duration_ms": (time.time() - start) * 1000.0})
            try:
                s.end()
            except Exception as exc:  # pragma: no cover
                logger.warning("langfuse_span_end_failed", error=repr(exc))
