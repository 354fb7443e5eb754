# ProcWise/config/settings.py

import json
import os
from typing import Any, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
ENV_FILE_PATH = os.path.join(PROJECT_ROOT, '.env')

DEFAULT_EXTRACTION_MODELS = [
    "qwen3:30b",
    "gpt-oss:20b",
    "phi4:latest",
    "llama3.2",
]


class Settings(BaseSettings):
    # PostgreSQL is used when a host is configured, SQLite otherwise.
    db_host: Optional[str] = Field(default=None, env="DB_HOST")
    db_name: Optional[str] = Field(default=None, env="DB_NAME")
    db_user: Optional[str] = Field(default=None, env="DB_USER")
    db_password: Optional[str] = Field(default=None, env="DB_PASSWORD")
    db_port: int = Field(default=5432, env="DB_PORT")
    sqlite_path: str = Field(
        default=os.path.join(PROJECT_ROOT, "data", "procwise.sqlite3"),
        env="SQLITE_PATH",
    )

    # IMAP mailbox configuration
    imap_host: Optional[str] = Field(default=None, env="IMAP_HOST")
    imap_port: int = Field(default=993, env="IMAP_PORT")
    imap_username: Optional[str] = Field(default=None, env="IMAP_USERNAME")
    imap_password: Optional[str] = Field(default=None, env="IMAP_PASSWORD")
    imap_mailbox: str = Field(default="INBOX", env="IMAP_MAILBOX")
    imap_use_ssl: bool = Field(default=True, env="IMAP_USE_SSL")
    imap_timeout: int = Field(default=30, env="IMAP_TIMEOUT")
    solicitation_marker: str = Field(default="RFP", env="SOLICITATION_MARKER")

    # Extraction capability (LM Studio OpenAI-compatible server)
    lmstudio_base_url: str = Field(
        default="http://127.0.0.1:1234", env="LMSTUDIO_BASE_URL"
    )
    lmstudio_timeout: int = Field(default=120, env="LMSTUDIO_TIMEOUT")
    lmstudio_api_key: Optional[str] = Field(
        default=None, env="LMSTUDIO_API_KEY"
    )
    extraction_models: List[str] = Field(
        default_factory=lambda: list(DEFAULT_EXTRACTION_MODELS),
        env="EXTRACTION_MODELS",
    )
    extraction_temperature: float = Field(
        default=0.1, env="EXTRACTION_TEMPERATURE"
    )

    # Ingestion pipeline
    summary_placeholder: str = Field(
        default="Unable to generate summary.", env="SUMMARY_PLACEHOLDER"
    )
    job_retention_limit: int = Field(default=500, env="JOB_RETENTION_LIMIT")

    class Config:
        env_file = ENV_FILE_PATH
        env_file_encoding = 'utf-8'
        extra = "ignore"

    @staticmethod
    def _parse_list(value: Any) -> List[str]:
        if value in (None, "", []):
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        if isinstance(value, str):
            text = value.strip()
            if text.startswith("["):
                try:
                    parsed = json.loads(text)
                except json.JSONDecodeError as exc:  # pragma: no cover - defensive
                    raise ValueError("Value must be a valid JSON list") from exc
                if not isinstance(parsed, list):
                    raise ValueError("JSON value must decode to a list")
                return [str(item) for item in parsed]
            return [part for part in text.split(",")]
        raise TypeError("Unsupported type; expected list or JSON string")

    @field_validator("extraction_models", mode="before")
    @classmethod
    def _coerce_extraction_models(cls, value):
        """Normalise the fallback chain, keeping order and dropping duplicates."""

        models: List[str] = []
        for name in cls._parse_list(value):
            candidate = name.strip()
            if candidate and candidate not in models:
                models.append(candidate)
        return models or list(DEFAULT_EXTRACTION_MODELS)

    @field_validator("job_retention_limit")
    @classmethod
    def _positive_retention(cls, value: int) -> int:
        if value < 1:
            raise ValueError("job_retention_limit must be at least 1")
        return value

try:
    settings = Settings()
except Exception as e:
    print(f"!!! FATAL ERROR: Could not load application settings from .env file: {e}")
    raise
