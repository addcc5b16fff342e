from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatekeep.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SPECIAL_CHARS = "!@#$%^&*()_-+={}[]|:;\"'<>,.?/~`"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Read-only settings for the account-security core.

    Build one instance at process start (``Settings.from_env()``) and pass it
    to every component; nothing in the package caches it globally.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/gatekeep", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")

    # Lockout policy
    lockout_max_attempts: int = env_field(
        5,
        "LOCKOUT_MAX_ATTEMPTS",
        description="Failed logins inside the window that trigger a lockout",
    )
    lockout_window_minutes: int = env_field(
        30,
        "LOCKOUT_WINDOW_MINUTES",
        description="Rolling window used to count failed logins",
    )
    lockout_duration_minutes: int = env_field(
        60,
        "LOCKOUT_DURATION_MINUTES",
        description="Length of a temporary lockout",
    )
    lockout_permanent_threshold: int = env_field(
        3,
        "LOCKOUT_PERMANENT_THRESHOLD",
        description="The Nth consecutive lockout becomes permanent; 0 disables escalation",
    )
    failed_login_retention_days: int = env_field(
        90, "FAILED_LOGIN_RETENTION_DAYS"
    )

    # Sessions and tokens
    session_ttl_minutes: int = env_field(120, "SESSION_TTL_MINUTES")
    password_reset_ttl_minutes: int = env_field(30, "PASSWORD_RESET_TTL_MINUTES")
    invitation_ttl_days: int = env_field(7, "INVITATION_TTL_DAYS")

    # Self-registration
    self_registration_allowed: bool = env_field(False, "SELF_REGISTRATION_ALLOWED")
    email_verification_required: bool = env_field(
        True,
        "EMAIL_VERIFICATION_REQUIRED",
        description="Self-registered accounts stay suspended until the address is confirmed",
    )
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")

    # Password policy
    password_history_count: int = env_field(
        5,
        "PASSWORD_HISTORY_COUNT",
        description="Previous password hashes a reset may not reuse; 0 disables the check",
    )
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(64, "PASSWORD_MAX_LENGTH")
    password_require_uppercase: bool = env_field(True, "PASSWORD_REQUIRE_UPPERCASE")
    password_require_lowercase: bool = env_field(True, "PASSWORD_REQUIRE_LOWERCASE")
    password_require_digit: bool = env_field(True, "PASSWORD_REQUIRE_DIGIT")
    password_require_special: bool = env_field(True, "PASSWORD_REQUIRE_SPECIAL")
    password_special_chars: str = env_field(
        DEFAULT_SPECIAL_CHARS, "PASSWORD_SPECIAL_CHARS"
    )

    # Audit
    audit_signing_key: str | None = env_field(
        None,
        "AUDIT_SIGNING_KEY",
        description="Optional HMAC key for audit signatures; unset means plain SHA-256",
    )

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatekeep", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        settings = cls(**merged)
        logger.info(
            "settings_loaded",
            use_memory_store=settings.use_memory_store,
            lockout_max_attempts=settings.lockout_max_attempts,
            lockout_window_minutes=settings.lockout_window_minutes,
            audit_keyed=settings.audit_signing_key is not None,
        )
        return settings

    @field_validator(
        "lockout_max_attempts",
        "lockout_window_minutes",
        "lockout_duration_minutes",
        "session_ttl_minutes",
        "password_reset_ttl_minutes",
        "invitation_ttl_days",
        "email_verification_ttl_hours",
        "failed_login_retention_days",
        "password_min_length",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("lockout_permanent_threshold", "password_history_count")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("password_max_length")
    @classmethod
    def _validate_max_length(cls, value: int, info) -> int:
        minimum = info.data.get("password_min_length")
        if minimum is not None and value < minimum:
            raise ValueError("password_max_length must be >= password_min_length")
        return value

    @field_validator("audit_signing_key")
    @classmethod
    def _blank_key_is_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value
