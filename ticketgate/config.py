import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache

from .pricing import PriceSchedule, load_price_schedule


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() == "true"


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str
    jwt_secret: str
    access_token_ttl_minutes: int
    refresh_token_ttl_days: int
    event_key: str
    public_site_url: str
    vip_price: Decimal
    vip_party_size: int
    ticket_number_start: int
    price_schedule: PriceSchedule
    mail_api_url: str
    mail_api_key: str | None
    mail_from: str
    artifact_dir: str | None
    artifact_public_url: str | None
    settlement_rate: Decimal
    admit_max_attempts: int
    login_max_attempts: int
    login_window_seconds: int
    cleanup_interval_seconds: int
    production: bool
    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        vip_party_size = int(env.get("VIP_PARTY_SIZE", "5"))
        if vip_party_size not in (5, 8):
            raise ValueError("VIP_PARTY_SIZE must be 5 or 8")

        return cls(
            database_url=env.get("DATABASE_URL", "sqlite:///./ticketgate.db"),
            redis_url=env.get("REDIS_URL", "redis://localhost:6379/0"),
            jwt_secret=env.get("JWT_SECRET", "dev_secret_change_me"),
            access_token_ttl_minutes=int(env.get("ACCESS_TOKEN_TTL_MINUTES", "60")),
            refresh_token_ttl_days=int(env.get("REFRESH_TOKEN_TTL_DAYS", "7")),
            event_key=env.get("EVENT_KEY", "default"),
            public_site_url=env.get("PUBLIC_SITE_URL", "https://example.com").rstrip("/"),
            vip_price=Decimal(env.get("VIP_PRICE", "10000")),
            vip_party_size=vip_party_size,
            ticket_number_start=int(env.get("TICKET_NUMBER_START", "5000")),
            price_schedule=load_price_schedule(
                raw=env.get("PRICE_SCHEDULE"),
                path=env.get("PRICE_SCHEDULE_FILE"),
                default_price=Decimal(env.get("DEFAULT_TICKET_PRICE", "1000")),
            ),
            mail_api_url=env.get("MAIL_API_URL", "https://api.brevo.com/v3/smtp/email"),
            mail_api_key=env.get("MAIL_API_KEY") or None,
            mail_from=env.get("MAIL_FROM", "no-reply@ticketgate.local"),
            artifact_dir=env.get("ARTIFACT_DIR") or None,
            artifact_public_url=(env.get("ARTIFACT_PUBLIC_URL") or "").rstrip("/") or None,
            settlement_rate=Decimal(env.get("SETTLEMENT_RATE", "12.85")),
            admit_max_attempts=int(env.get("ADMIT_MAX_ATTEMPTS", "5")),
            login_max_attempts=int(env.get("LOGIN_MAX_ATTEMPTS", "5")),
            login_window_seconds=int(env.get("LOGIN_WINDOW_SECONDS", "900")),
            cleanup_interval_seconds=int(env.get("CLEANUP_INTERVAL_SECONDS", "3600")),
            production=_env_bool("PRODUCTION"),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read from the environment on first use.

    Call ``get_settings.cache_clear()`` after changing the environment.
    """
    return Settings.from_env()
