from __future__ import annotations

import os
from functools import lru_cache

from google.cloud import firestore

from ..config import settings
from ..logging import logger
from .firestore_store import AppFirestoreStore

_DEFAULT_EMULATOR_HOST = "127.0.0.1:8080"
# エミュレータは任意のプロジェクト ID を受け付けるが、未指定だと ADC 探索が走る
_EMULATOR_PROJECT_ID = "polish-practice-local"


def _normalize_emulator_host(raw_host: str | None) -> str | None:
    """`firestore-emulator:8080` のようなスキーム無しの値に http:// を補う。空は None。"""

    host = (raw_host or "").strip()
    if not host:
        return None
    if "://" in host:
        return host
    return f"http://{host}"


def _resolve_emulator_host() -> str | None:
    # 明示設定 > 環境変数 > 本番以外の既定ホスト
    if settings.firestore_emulator_host:
        return _normalize_emulator_host(settings.firestore_emulator_host)
    env_host = os.environ.get("FIRESTORE_EMULATOR_HOST")
    if env_host:
        return _normalize_emulator_host(env_host)
    if (settings.environment or "").strip().lower() == "production":
        return None
    return _normalize_emulator_host(_DEFAULT_EMULATOR_HOST)


def _build_firestore_client() -> firestore.Client:
    """概念・進捗・問題バンク・セッションを保存する Firestore クライアントを作る。

    本番以外ではエミュレータを優先し、google-cloud-firestore が匿名認証へ
    切り替わるよう FIRESTORE_EMULATOR_HOST もスキーム無しで設定する。
    """

    emulator_host = _resolve_emulator_host()
    project_id = settings.firestore_project_id or settings.gcp_project_id
    if emulator_host is None:
        logger.info("firestore_client_built", target="cloud", project=project_id)
        return firestore.Client(project=project_id)

    os.environ.setdefault("FIRESTORE_EMULATOR_HOST", emulator_host.split("://", 1)[1])
    project_id = project_id or _EMULATOR_PROJECT_ID
    logger.info("firestore_client_built", target="emulator", host=emulator_host, project=project_id)
    return firestore.Client(project=project_id, client_options={"api_endpoint": emulator_host})


@lru_cache(maxsize=1)
def get_store() -> AppFirestoreStore:
    """プロセス共有の `AppFirestoreStore`。最初の呼び出しで接続する。"""

    return AppFirestoreStore(client=_build_firestore_client())


__all__ = [
    "AppFirestoreStore",
    "get_store",
]
