from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    session_cookie_name: str
    default_batch_limit: int
    send_lease_ttl_seconds: int
    session_ttl_seconds: int
    mailer_transport: str
    mailer_host: str
    mailer_port: int
    mailer_encryption: str
    mailer_user: str
    mailer_password: str
    mailer_amazon_region: str
    mailer_from_email: str
    mailer_from_name: str
    pipedrive_enabled: bool
    pipedrive_user: str
    pipedrive_password: str

    def transport_settings(self) -> dict[str, object]:
        return {
            "host": self.mailer_host,
            "port": self.mailer_port,
            "encryption": self.mailer_encryption,
            "user": self.mailer_user,
            "password": self.mailer_password,
            "amazon_region": self.mailer_amazon_region,
        }


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/campaign_sender.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        session_cookie_name=os.getenv("SESSION_COOKIE_NAME", "campaign_session").strip()
        or "campaign_session",
        default_batch_limit=max(1, _int_env("DEFAULT_BATCH_LIMIT", 100)),
        send_lease_ttl_seconds=max(0, _int_env("SEND_LEASE_TTL_SECONDS", 300)),
        session_ttl_seconds=max(0, _int_env("SESSION_TTL_SECONDS", 86400)),
        mailer_transport=os.getenv("MAILER_TRANSPORT", "smtp").strip().lower(),
        mailer_host=os.getenv("MAILER_HOST", "localhost").strip(),
        mailer_port=_int_env("MAILER_PORT", 25),
        mailer_encryption=os.getenv("MAILER_ENCRYPTION", "none").strip().lower(),
        mailer_user=os.getenv("MAILER_USER", "").strip(),
        mailer_password=os.getenv("MAILER_PASSWORD", ""),
        mailer_amazon_region=os.getenv("MAILER_AMAZON_REGION", "us-east-1").strip(),
        mailer_from_email=os.getenv("MAILER_FROM_EMAIL", "noreply@example.com").strip(),
        mailer_from_name=os.getenv("MAILER_FROM_NAME", "Campaign Sender").strip(),
        pipedrive_enabled=_bool_env("PIPEDRIVE_ENABLED", False),
        pipedrive_user=os.getenv("PIPEDRIVE_USER", "").strip(),
        pipedrive_password=os.getenv("PIPEDRIVE_PASSWORD", ""),
    )
