from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


def _parse_default_input(v: str | None) -> dict[str, Any]:
    """REPLICATE_DEFAULT_INPUT is a JSON object; anything else is ignored."""
    if not v:
        return {}
    import json
    try:
        out = json.loads(v)
    except ValueError:
        return {}
    return out if isinstance(out, dict) else {}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="kidhero", alias="MONGODB_DB_NAME")

    # Redis (ARQ worker for periodic credit recovery)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Replicate
    replicate_api_token: str = Field(default="", alias="REPLICATE_API_TOKEN")
    replicate_model: str = Field(default="black-forest-labs/flux-kontext-pro", alias="REPLICATE_MODEL")
    replicate_api_url: str = Field(default="https://api.replicate.com/v1", alias="REPLICATE_API_URL")
    replicate_default_input_raw: str = Field(default="", alias="REPLICATE_DEFAULT_INPUT")

    @property
    def replicate_default_input(self) -> dict[str, Any]:
        return _parse_default_input(self.replicate_default_input_raw)

    # Hero prompt catalog (JSON object: hero key -> prompt)
    hero_prompts_path: str = Field(default="./data/hero_prompts.json", alias="HERO_PROMPTS_PATH")

    # Stripe
    stripe_webhook_secret: str = Field(default="", alias="STRIPE_WEBHOOK_SECRET")
    stripe_webhook_tolerance: int = 300

    # SMTP (order notifications)
    smtp_host: str = Field(default="", alias="SMTP_HOST")
    smtp_port: int = Field(default=465, alias="SMTP_PORT")
    smtp_user: str = Field(default="", alias="SMTP_USER")
    smtp_password: str = Field(default="", alias="SMTP_PASSWORD")
    smtp_from: str = Field(default="", alias="SMTP_FROM")
    admin_orders_email: str = Field(default="", alias="ADMIN_ORDERS_EMAIL")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Pricing (credits)
    credits_per_generation: int = 1

    # Generation
    generation_concurrency: int = 3
    provider_timeout_seconds: float = 120.0
    provider_poll_interval_seconds: float = 1.0
    max_upload_bytes: int = 15 * 1024 * 1024
    generations_page_max: int = 100

    # Recovery sweep for reservations left behind by a crash
    stale_reservation_minutes: int = 30


@lru_cache
def get_settings() -> Settings:
    return Settings()
