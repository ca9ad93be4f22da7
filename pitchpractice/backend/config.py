import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional


DEFAULT_OPENAI_MODEL = "gpt-4o"
DEFAULT_TRANSCRIBE_MODEL = "whisper-1"
DEFAULT_BUCKET = "pitchpractice-audio"
DEFAULT_FRONTEND_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _optional_env(name: str) -> Optional[str]:
    value = _env(name)
    return value or None


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    openai_model: str = DEFAULT_OPENAI_MODEL
    openai_transcribe_model: str = DEFAULT_TRANSCRIBE_MODEL
    openai_timeout_seconds: float = 120.0
    gcs_bucket: str = DEFAULT_BUCKET
    gcp_project_id: Optional[str] = None
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_prices: Dict[str, str] = field(default_factory=dict)
    frontend_origins: List[str] = field(default_factory=list)
    app_base_url: str = "http://localhost:3000"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        prices = {
            plan: _env(f"STRIPE_PRICE_{plan.upper()}")
            for plan in ("starter", "coach", "daypass")
        }
        origins = _env("FRONTEND_ORIGINS", DEFAULT_FRONTEND_ORIGINS)
        return cls(
            database_url=_optional_env("DATABASE_URL"),
            openai_api_key=_optional_env("OPENAI_API_KEY"),
            openai_base_url=_optional_env("OPENAI_BASE_URL"),
            openai_model=_env("OPENAI_MODEL", DEFAULT_OPENAI_MODEL) or DEFAULT_OPENAI_MODEL,
            openai_transcribe_model=(
                _env("OPENAI_TRANSCRIBE_MODEL", DEFAULT_TRANSCRIBE_MODEL) or DEFAULT_TRANSCRIBE_MODEL
            ),
            openai_timeout_seconds=float(_env("OPENAI_TIMEOUT_SECONDS", "120") or "120"),
            gcs_bucket=_env("GCS_AUDIO_BUCKET", DEFAULT_BUCKET) or DEFAULT_BUCKET,
            gcp_project_id=_optional_env("GCP_PROJECT_ID"),
            supabase_url=_optional_env("SUPABASE_URL"),
            supabase_key=_optional_env("SUPABASE_SERVICE_ROLE_KEY") or _optional_env("SUPABASE_KEY"),
            stripe_secret_key=_optional_env("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=_optional_env("STRIPE_WEBHOOK_SECRET"),
            stripe_prices={plan: price for plan, price in prices.items() if price},
            frontend_origins=[origin.strip() for origin in origins.split(",") if origin.strip()],
            app_base_url=(_env("APP_BASE_URL", "http://localhost:3000") or "http://localhost:3000").rstrip("/"),
            log_level=_env("LOG_LEVEL", "INFO").upper() or "INFO",
        )
