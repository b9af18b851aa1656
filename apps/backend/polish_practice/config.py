from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    環境変数から読み込まれるアプリ設定クラス。
    - environment: 実行環境（development/staging/production など）
    - llm_provider: 利用する LLM プロバイダ
    - practice_*: 練習セッションと SRS 選択の既定値
    """

    environment: str = Field(
        default="development",
        description="Runtime environment / 実行環境",
    )
    default_user_id: str = Field(
        default="default",
        description="User id used when callers omit one / ユーザーID未指定時の既定値",
    )

    # --- LLM ---
    llm_provider: str = Field(
        default="openai",
        description="LLM service provider / 利用するLLMプロバイダ",
    )
    llm_model: str = Field(
        default="gpt-4o-mini",
        description="LLM model name / 利用するLLMモデル名",
    )
    llm_temperature: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Optional sampling temperature / 生成温度（未指定なら実装既定）",
    )

    # --- LLM 呼出しのタイムアウト/リトライ ---
    llm_timeout_ms: int = Field(
        default=60000,
        description="Per-attempt timeout for LLM calls (ms) / LLM呼出しの試行毎タイムアウト(ms)",
    )
    llm_max_retries: int = Field(
        default=1,
        description="Max retries for LLM calls / LLM呼出しの最大リトライ回数",
    )
    llm_max_tokens: int = Field(
        default=900,
        description="Max tokens for LLM completion output / LLM出力の最大トークン数",
    )

    # --- API Keys ---
    openai_api_key: str | None = Field(default=None, description="OpenAI API Key")

    # --- Firestore ---
    firestore_project_id: str | None = Field(
        default=None,
        description="Firestore project id / Firestore のプロジェクトID",
    )
    gcp_project_id: str | None = Field(
        default=None,
        description="Fallback GCP project id / Firestore 未指定時に使う GCP プロジェクトID",
    )
    firestore_emulator_host: str | None = Field(
        default=None,
        description="Firestore emulator host (host:port) / エミュレータ接続先",
    )

    # --- Practice / SRS ---
    practice_max_concepts: int = Field(
        default=5,
        description="Concepts selected per SRS practice session / SRS 選択で扱う概念数",
    )
    practice_max_questions: int = Field(
        default=10,
        description="Questions served per session / 1セッションの出題数",
    )
    practice_min_questions: int = Field(
        default=3,
        description="Minimum questions required to start a session / セッション開始に必要な最少問題数",
    )
    drill_group_max_concepts: int = Field(
        default=20,
        description="Max concepts for group drills / グループ演習の概念上限",
    )
    question_generation_max: int = Field(
        default=3,
        description="Max questions generated on demand per request / 1回の不足補充で生成する問題数上限",
    )
    question_save_max_retries: int = Field(
        default=3,
        description="Attempts for question bank writes / 問題バンク保存の試行回数",
    )
    question_save_backoff_base_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Exponential backoff base (seconds) for question bank writes / 保存リトライの指数バックオフ基準秒",
    )

    # --- Concept extraction ---
    extraction_chunk_max_chars: int = Field(
        default=3000,
        description="Courses longer than this are extracted chunk by chunk / 分割抽出するチャンクの最大文字数",
    )
    extraction_chunk_min_chars: int = Field(
        default=500,
        description="Minimum chunk size before a paragraph is force-split / チャンクの最小文字数",
    )
    extraction_chunk_overlap_chars: int = Field(
        default=100,
        ge=0,
        description="Characters carried over from the previous chunk / 前チャンクから引き継ぐ文字数",
    )

    # --- Operations/Observability ---
    log_level: str = Field(
        default="INFO",
        description="Root log level (DEBUG/INFO/WARNING/ERROR) / ログレベル",
    )
    sentry_dsn: str | None = Field(
        default=None, description="Sentry DSN (enable if set)"
    )
    # Langfuse 観測基盤
    langfuse_enabled: bool = Field(
        default=False,
        description="Enable Langfuse tracing/observability / Langfuse の有効化",
    )
    langfuse_public_key: str | None = Field(
        default=None, description="Langfuse public key"
    )
    langfuse_secret_key: str | None = Field(
        default=None, description="Langfuse secret key"
    )
    langfuse_host: str | None = Field(
        default=None, description="Langfuse host (e.g. https://cloud.langfuse.com)"
    )
    langfuse_release: str | None = Field(
        default=None, description="Release/version tag for tracing"
    )
    # Langfuse 入力ログの詳細度（LLM プロンプトの全文送信を制御）
    langfuse_log_full_prompt: bool = Field(
        default=False,
        description="Send full LLM prompt to Langfuse in span input (disabled by default)",
    )
    langfuse_prompt_max_chars: int = Field(
        default=40000,
        description="Max characters to record for prompt/input to Langfuse",
    )

    # --- Strict mode ---
    strict_mode: bool = Field(
        default=True,
        description="Fail fast on missing/invalid configuration (disable only for tests)",
    )

    # Pydantic v2 settings config
    # - env_file: .env を読み込む
    # - extra: .env に存在する未使用キーを無視
    # - case_sensitive: 環境変数キーの大小文字を区別しない
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("llm_provider", mode="before")
    @classmethod
    def _normalise_llm_provider(cls, raw: object) -> object:
        """プロバイダ名の表記ゆれ（大文字・前後空白）を吸収する。"""

        if isinstance(raw, str):
            return raw.strip().lower()
        return raw

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, raw: object) -> object:
        if isinstance(raw, str):
            return raw.strip().upper() or "INFO"
        return raw

    @field_validator(
        "llm_max_retries",
        "practice_max_concepts",
        "practice_max_questions",
        "practice_min_questions",
        "drill_group_max_concepts",
        "question_generation_max",
        "question_save_max_retries",
        "extraction_chunk_max_chars",
        "extraction_chunk_min_chars",
        mode="before",
    )
    @classmethod
    def _normalise_positive_int(
        cls, raw: object
    ) -> int | object:  # pragma: no cover - pydantic handles typing
        """Clamp counters to >= 1 before model parsing.

        0 や負数が `.env` に書かれてもループや上限計算が破綻しないよう、
        1 以上へ矯正する。数値化できない値は pydantic の検証に委ねる。
        """

        try:
            value = int(raw)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return raw
        return value if value >= 1 else 1

    @model_validator(mode="after")
    def _require_openai_key_in_production(self) -> "Settings":
        """本番の strict モードでは OpenAI キー未設定のまま起動させない。

        開発環境ではプロバイダ取得時の遅延チェックに任せ、テストや
        エミュレータ運用を妨げないようにする。
        """

        environment_name = (self.environment or "").lower()
        if (
            environment_name == "production"
            and self.strict_mode
            and self.llm_provider == "openai"
            and not (self.openai_api_key or "").strip()
        ):
            raise ValueError(
                "OPENAI_API_KEY must be set when STRICT_MODE=true in production",
            )
        return self


settings = Settings()
