from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

DEFAULT_FOLLOWUP_SUBJECT = "Thanks for reviewing {document_title} - let's talk next steps"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


TRUTHY = {"1", "true", "yes", "y", "on"}


def parse_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY
    return default


def _bool_env(name: str, default: bool) -> bool:
    return parse_bool(os.getenv(name), default)


def clamp_delay_minutes(value: int) -> int:
    return max(1, min(1440, value))


@dataclass(frozen=True)
class FollowupConfig:
    enabled: bool
    delay_minutes: int
    subject_template: str


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    booking_webhook_token: str
    booking_webhook_auth_enabled: bool
    followup_enabled: bool
    followup_delay_minutes: int
    followup_subject: str
    smtp_host: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    smtp_use_tls: bool
    mail_from_address: str

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"

    def followup_defaults(self) -> FollowupConfig:
        return FollowupConfig(
            enabled=self.followup_enabled,
            delay_minutes=self.followup_delay_minutes,
            subject_template=self.followup_subject,
        )


def load_settings() -> Settings:
    app_env = os.getenv("APP_ENV", "development")
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/followup_engine.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=app_env,
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        booking_webhook_token=os.getenv("BOOKING_WEBHOOK_TOKEN", "").strip(),
        booking_webhook_auth_enabled=_bool_env(
            "BOOKING_WEBHOOK_AUTH_ENABLED",
            app_env.strip().lower() not in {"local", "testing"},
        ),
        followup_enabled=_bool_env("FOLLOWUP_ENABLED", True),
        followup_delay_minutes=clamp_delay_minutes(_int_env("FOLLOWUP_DELAY_MINUTES", 15)),
        followup_subject=os.getenv("FOLLOWUP_SUBJECT", DEFAULT_FOLLOWUP_SUBJECT),
        smtp_host=os.getenv("SMTP_HOST", "").strip(),
        smtp_port=_int_env("SMTP_PORT", 587),
        smtp_username=os.getenv("SMTP_USERNAME", "").strip(),
        smtp_password=os.getenv("SMTP_PASSWORD", ""),
        smtp_use_tls=_bool_env("SMTP_USE_TLS", True),
        mail_from_address=os.getenv("MAIL_FROM_ADDRESS", "followups@localhost").strip(),
    )
