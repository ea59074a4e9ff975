# settings.py
from typing import List
import os

from pydantic import BaseModel, Field
from dotenv import load_dotenv

# Load variables from .env at import time
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def _env_floats(name: str, default: str) -> List[float]:
    raw = os.getenv(name, default)
    return [float(part) for part in raw.split(",") if part.strip()]


class Settings(BaseModel):
    # persistence
    database_url: str = Field(default=os.getenv("DATABASE_URL", "sqlite:///./expressr.db"))

    # storage: "r2" or "local"
    storage: str = Field(default=os.getenv("STORAGE", "local").lower())
    local_storage_dir: str = Field(default=os.getenv("LOCAL_STORAGE_DIR", os.path.join(os.getcwd(), "local_images")))
    r2_access_key_id: str = Field(default=os.getenv("R2_ACCESS_KEY_ID", ""))
    r2_secret_access_key: str = Field(default=os.getenv("R2_SECRET_ACCESS_KEY", ""))
    r2_endpoint_url: str = Field(default=os.getenv("R2_ENDPOINT_URL", ""))
    r2_bucket: str = Field(default=os.getenv("R2_BUCKET", "expressr"))
    r2_public_base: str = Field(default=os.getenv("R2_PUBLIC_BASE", ""))
    public_base_url: str = Field(default=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"))

    # training + inference (Replicate)
    replicate_api_token: str = Field(default=os.getenv("REPLICATE_API_TOKEN", ""))
    replicate_trainer_model: str = Field(default=os.getenv("REPLICATE_TRAINER_MODEL", "ostris/flux-dev-lora-trainer"))
    replicate_trainer_version: str = Field(
        default=os.getenv(
            "REPLICATE_TRAINER_VERSION",
            "e440909d3512c31646ee2e0c7d6f6f4923224863a6a10c494606e79fb5844497",
        )
    )
    replicate_destination_owner: str = Field(default=os.getenv("REPLICATE_DESTINATION_OWNER", ""))
    replicate_face_model: str = Field(
        default=os.getenv(
            "REPLICATE_FACE_MODEL",
            "chigozienri/mediapipe-face:b52b4833a810a8b8d835d6339b72536d63590918b185588be2def78a89e7ca7b",
        )
    )
    trigger_word: str = Field(default=os.getenv("TRIGGER_WORD", "TOK"))
    training_steps: int = Field(default=int(os.getenv("TRAINING_STEPS", "1200")))

    # generation driver
    generation_delay_sec: float = Field(default=float(os.getenv("GENERATION_DELAY_SEC", "12")))
    generation_timeout_sec: float = Field(default=float(os.getenv("GENERATION_TIMEOUT_SEC", "120")))
    generation_concurrency: int = Field(default=int(os.getenv("GENERATION_CONCURRENCY", "1")))
    rate_limit_backoff: List[float] = Field(default_factory=lambda: _env_floats("RATE_LIMIT_BACKOFF", "5,20,50"))
    download_timeout_sec: float = Field(default=float(os.getenv("DOWNLOAD_TIMEOUT_SEC", "60")))

    # payment (Stripe)
    stripe_secret_key: str = Field(default=os.getenv("STRIPE_SECRET_KEY", ""))
    stripe_webhook_secret: str = Field(default=os.getenv("STRIPE_WEBHOOK_SECRET", ""))
    price_cents: int = Field(default=int(os.getenv("PRICE_CENTS", "999")))
    currency: str = Field(default=os.getenv("CURRENCY", "usd"))

    # email (Resend)
    resend_api_key: str = Field(default=os.getenv("RESEND_API_KEY", ""))
    email_from: str = Field(default=os.getenv("EMAIL_FROM", "Expressr <onboarding@resend.dev>"))

    # pipeline rules
    dedup_window_minutes: int = Field(default=int(os.getenv("DEDUP_WINDOW_MINUTES", "30")))
    max_regenerations: int = Field(default=int(os.getenv("MAX_REGENERATIONS", "3")))

    # worker
    worker_poll_interval: float = Field(default=float(os.getenv("WORKER_POLL_INTERVAL", "2")))
    task_max_attempts: int = Field(default=int(os.getenv("TASK_MAX_ATTEMPTS", "5")))
    task_lease_seconds: int = Field(default=int(os.getenv("TASK_LEASE_SECONDS", "1800")))
    # full-pack triggers waiting on free generation re-check every 15s; 240 waits is one hour
    task_max_deferrals: int = Field(default=int(os.getenv("TASK_MAX_DEFERRALS", "240")))
    run_embedded_worker: bool = Field(default=_env_bool("RUN_EMBEDDED_WORKER"))

    # app
    cors_origins: str = Field(default=os.getenv("CORS_ORIGINS", "*"))
    log_level: str = Field(default=os.getenv("LOG_LEVEL", "INFO").upper())

    @property
    def app_url(self) -> str:
        return self.public_base_url.rstrip("/")


settings = Settings()
