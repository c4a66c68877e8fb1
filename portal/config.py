"""Runtime configuration for the sign-in portal."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

DEFAULT_CALLBACK_PATH = "/auth/google/callback"
DEFAULT_ALLOWED_ORIGINS = ("http://localhost:3000",)


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _parse_number(value: Optional[str], default, cast):
    if value is None or not value.strip():
        return default
    try:
        return cast(value.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid numeric configuration value: {value!r}") from exc


@dataclass(frozen=True)
class Settings:
    """Configuration resolved from the process environment."""

    google_client_id: str = ""
    google_client_secret: str = ""
    callback_url: str = DEFAULT_CALLBACK_PATH
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_service_role_key: str = ""
    session_secret: str = ""
    allowed_origins: Tuple[str, ...] = DEFAULT_ALLOWED_ORIGINS
    admin_email: Optional[str] = None
    gmail_pubsub_topic: Optional[str] = None
    environment: str = "development"
    secure_cookies_override: Optional[bool] = None
    port: int = 3000
    store_timeout: float = 10.0
    rate_limit_requests: int = 60
    rate_limit_window: int = 60
    session_ttl_hours: int = 24
    reconcile_profile: bool = False
    trusted_proxies: Tuple[str, ...] = ()

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def secure_cookies(self) -> bool:
        if self.secure_cookies_override is not None:
            return self.secure_cookies_override
        return self.is_production

    @property
    def privileged_key(self) -> str:
        """Key used by operator tooling; the restricted key is the fallback."""
        return self.supabase_service_role_key or self.supabase_anon_key

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        secure_raw = env.get("SESSION_SECURE")
        secure_override = None if secure_raw is None else _env_flag(secure_raw)

        admin_email = (env.get("ADMIN_EMAIL") or "").strip() or None
        topic = (env.get("GMAIL_PUBSUB_TOPIC") or "").strip() or None

        return Settings(
            google_client_id=env.get("GOOGLE_CLIENT_ID", "").strip(),
            google_client_secret=env.get("GOOGLE_CLIENT_SECRET", "").strip(),
            callback_url=(env.get("CALLBACK_URL") or "").strip() or DEFAULT_CALLBACK_PATH,
            supabase_url=env.get("SUPABASE_URL", "").strip().rstrip("/"),
            supabase_anon_key=env.get("SUPABASE_ANON_KEY", "").strip(),
            supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY", "").strip(),
            session_secret=env.get("SESSION_SECRET", ""),
            allowed_origins=_split_csv(env.get("ALLOWED_ORIGINS")) or DEFAULT_ALLOWED_ORIGINS,
            admin_email=admin_email,
            gmail_pubsub_topic=topic,
            environment=(env.get("APP_ENV") or "development").strip() or "development",
            secure_cookies_override=secure_override,
            port=_parse_number(env.get("PORT"), 3000, int),
            store_timeout=_parse_number(env.get("STORE_TIMEOUT"), 10.0, float),
            rate_limit_requests=_parse_number(env.get("RATE_LIMIT_REQUESTS"), 60, int),
            rate_limit_window=_parse_number(env.get("RATE_LIMIT_WINDOW"), 60, int),
            session_ttl_hours=_parse_number(env.get("SESSION_TTL_HOURS"), 24, int),
            reconcile_profile=_env_flag(env.get("RECONCILE_PROFILE")),
            trusted_proxies=_split_csv(env.get("TRUSTED_PROXIES")),
        )


__all__ = ["Settings", "DEFAULT_CALLBACK_PATH", "DEFAULT_ALLOWED_ORIGINS"]
