"""
Centralised configuration loaded from environment / .env file.
Uses pydantic-settings for validation and type coercion.
"""

from __future__ import annotations

from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Twilio ──────────────────────────────────────────────────
    twilio_account_sid: str = Field(default="", description="Twilio account SID (basic-auth user)")
    twilio_auth_token: str = Field(default="", description="Twilio auth token (basic-auth password)")
    twilio_validate_signature: bool = Field(default=False)
    public_base_url: str = Field(default="", description="Externally reachable base URL of this service")

    # ── Inference (OpenAI-compatible) ───────────────────────────
    openai_api_key: str = Field(default="", description="API key for transcription and classification")
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    transcription_model: str = Field(default="whisper-1")
    transcription_language: str = Field(default="es")
    classification_model: str = Field(default="gpt-4o")
    http_timeout_seconds: float = Field(default=30.0, gt=0)

    # ── Pipeline rules ──────────────────────────────────────────
    min_call_duration_seconds: int = Field(default=10, ge=0)
    summary_max_length: int = Field(default=200, ge=20)
    default_phone_region: str = Field(default="US")

    # ── Paths ───────────────────────────────────────────────────
    database_path: Path = Field(default=Path("data/complaints.db"))
    log_dir: Path = Field(default=Path("data/logs"))

    # ── Server ──────────────────────────────────────────────────
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    def ensure_dirs(self) -> None:
        """Create required directories if they don't exist."""
        for d in [
            self.log_dir,
            self.database_path.parent,
        ]:
            d.mkdir(parents=True, exist_ok=True)


def get_settings() -> Settings:
    """Factory – one instance per process, passed down explicitly."""
    return Settings()  # type: ignore[call-arg]
