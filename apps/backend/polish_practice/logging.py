"""Structured logging for the practice backend.

structlog で JSON 1 行のログを出す。採点や生成の失敗メッセージには
OpenAI / Langfuse / Sentry の資格情報が混ざることがあるため、描画前に
`Settings` の機密フィールドの値を伏せ字へ置き換える。
"""

from __future__ import annotations

import logging
import re
from typing import Any

import structlog
from structlog import contextvars as structlog_contextvars

from .config import Settings, settings

# ログのキー名を `_` 区切りにしたとき、これらの語を含むものは値を伏せる。
# `keywords` や `correct_answer` のような学習データは対象外にする。
_SECRET_NAME_PARTS = frozenset({"key", "token", "secret", "password", "authorization", "dsn"})
_MASK = "***"
_NAME_SPLIT_RE = re.compile(r"[_\-.]+")


def _is_sensitive_key(name: str) -> bool:
    parts = _NAME_SPLIT_RE.split(name.lower())
    return any(part in _SECRET_NAME_PARTS for part in parts)


# Settings のうち資格情報を持つフィールド名（openai_api_key, langfuse_*_key, sentry_dsn）
SECRET_SETTING_FIELDS: tuple[str, ...] = tuple(
    name for name in Settings.model_fields if _is_sensitive_key(name)
)


def _mask_secret_value(raw: object) -> str:
    """9 文字以上なら先頭4文字と末尾4文字だけ残し、それ以外は `***`。"""

    text = "" if raw is None else str(raw).strip()
    if len(text) <= 8:
        return _MASK
    return f"{text[:4]}…{text[-4:]}"


def _configured_secrets() -> tuple[str, ...]:
    # monkeypatch や再読込に追従するため、毎イベント現在値を読む
    values = (getattr(settings, name, None) for name in SECRET_SETTING_FIELDS)
    return tuple(str(v) for v in values if v)


def _sanitize(value: Any, key: str | None, secrets: tuple[str, ...]) -> Any:
    if isinstance(value, dict):
        return {k: _sanitize(v, str(k), secrets) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(v, key, secrets) for v in value]
    if isinstance(value, str):
        for secret in secrets:
            if secret in value:
                value = value.replace(secret, _mask_secret_value(secret))
    if key is not None and _is_sensitive_key(key):
        return _mask_secret_value(value)
    return value


def _sanitize_event_dict(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    secrets = _configured_secrets()
    for key in list(event_dict):
        if key == "event":
            continue
        event_dict[key] = _sanitize(event_dict[key], str(key), secrets)
    return event_dict


def configure_logging() -> None:
    """Configure stdlib logging and structlog for JSON output.

    レベルは `LOG_LEVEL`。stdlib 側はメッセージ本文のみを出力し、JSON の
    前に `INFO:` などの接頭辞が付かないようにする。SENTRY_DSN があれば
    ERROR 以上を Sentry へ送る。
    """

    level = logging.getLevelName(settings.log_level)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler()],
        force=True,
    )
    structlog.configure(
        processors=[
            structlog_contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _sanitize_event_dict,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    if settings.sentry_dsn:
        try:
            import sentry_sdk  # type: ignore
            from sentry_sdk.integrations.logging import LoggingIntegration  # type: ignore
        except ImportError:
            logging.getLogger(__name__).warning("sentry_sdk_not_installed")
            return
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
        )


logger = structlog.get_logger()
