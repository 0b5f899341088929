"""
Application configuration via environment variables (12-factor).
Pydantic BaseSettings validates and coerces all values at startup.

The Settings object is built once by the application factory and handed to
every service constructor. Nothing in the package reads configuration from
module-level state.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------
    database_url: str = "sqlite+aiosqlite:///./docchat.db"   # postgresql+asyncpg://… in prod

    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_echo_sql: bool = False   # set True in local dev to log queries

    # ------------------------------------------------------------------
    # Artifact storage
    # ------------------------------------------------------------------
    storage_backend: str = "local"       # "local" | "s3"
    storage_root:    str = "./uploads"   # local backend only

    s3_bucket:      str = "docchat-artifacts"
    s3_prefix:      str = "artifacts"
    s3_kms_key_arn: str = ""             # empty = bucket default encryption
    aws_region:     str = "us-east-1"

    max_upload_bytes: int = 10 * 1024 * 1024   # 10 MB

    # ------------------------------------------------------------------
    # Processing pipeline
    # ------------------------------------------------------------------
    work_dir: str = "./temp"   # per-run scratch areas are created below this

    ocr_default_language:     str   = "eng"
    ocr_concurrency:          int   = Field(4, ge=1)
    ocr_page_timeout_seconds: float = 120.0
    ocr_render_dpi:           int   = 300
    tesseract_cmd:            str   = ""    # empty = pytesseract default lookup on PATH

    # A PDF whose text layer holds at least this many non-blank characters
    # is treated as text-bearing and never rasterized.
    pdf_text_min_chars: int = 1

    # A live run renews its lease every TTL/3 seconds; a 'processing' row
    # whose lease is older than the TTL was abandoned by a crashed worker
    # and may be re-leased.
    processing_lease_ttl_seconds: float = Field(900.0, gt=0)

    # ------------------------------------------------------------------
    # Completion service (Ollama)
    # ------------------------------------------------------------------
    ollama_api_url:      str   = "http://ollama:11434"
    ollama_model:        str   = "llama3"
    llm_timeout_seconds: float = 60.0

    # ------------------------------------------------------------------
    # Auth: bearer tokens issued by the identity provider
    # ------------------------------------------------------------------
    jwt_secret:    str = "change-me"
    jwt_algorithm: str = "HS256"

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    cors_origins: list[str] = ["http://localhost:3000"]
    app_env: str = "development"   # development | staging | production
    debug: bool = False

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
