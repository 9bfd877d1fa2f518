from __future__ import annotations

import json
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from icsession.logging import get_logger

logger = get_logger(__name__)

# Operations that need an MFA-verified session unless STEP_UP_POLICY overrides them
DEFAULT_STEP_UP_POLICY: dict[str, str] = {
    "revoke_all_sessions": "mfa_verified",
    "link_identity": "mfa_verified",
    "change_password": "mfa_verified",
    "deactivate_principal": "mfa_verified",
    "enroll_mfa": "mfa_verified",
}

RATE_LIMIT_CLASSES = ("login", "refresh", "mfa_attempt", "session_check")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the session authority."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str = env_field("/var/lib/icsession", "ICS_STATE_DIR")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows resetting the runtime.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("icsession", "JWT_ISSUER")
    jwt_audience: str = env_field("ics-applications", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(30, "JWT_LEEWAY_SECONDS", ge=0, le=300)
    access_token_ttl_seconds: int = env_field(
        3600, "ACCESS_TOKEN_TTL_SECONDS", ge=30, le=24 * 3600
    )
    refresh_token_ttl_minutes: int = env_field(
        14 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    session_max_lifetime_minutes: int = env_field(
        30 * 24 * 60,
        "SESSION_MAX_LIFETIME_MINUTES",
        ge=1,
        description="Absolute cap on a session's sliding expiry",
    )

    mfa_code_step_seconds: int = env_field(30, "MFA_CODE_STEP_SECONDS", ge=5)
    mfa_code_skew_steps: int = env_field(1, "MFA_CODE_SKEW_STEPS", ge=0, le=5)
    mfa_code_lookback_steps: int = env_field(
        10,
        "MFA_CODE_LOOKBACK_STEPS",
        ge=0,
        description="Older steps checked to tell an expired code from a wrong one",
    )
    mfa_challenge_ttl_seconds: int = env_field(300, "MFA_CHALLENGE_TTL_SECONDS", ge=30)
    mfa_secret_key: str | None = env_field(None, "MFA_SECRET_KEY")

    login_max_failures: int = env_field(5, "LOGIN_MAX_FAILURES", ge=1)
    login_failure_window_seconds: int = env_field(900, "LOGIN_FAILURE_WINDOW_SECONDS", ge=1)
    login_lockout_seconds: int = env_field(900, "LOGIN_LOCKOUT_SECONDS", ge=1)

    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS", ge=1)
    rate_limit_login_per_window: int = env_field(10, "RATE_LIMIT_LOGIN_PER_WINDOW", ge=1)
    rate_limit_refresh_per_window: int = env_field(30, "RATE_LIMIT_REFRESH_PER_WINDOW", ge=1)
    rate_limit_mfa_attempt_per_window: int = env_field(
        5, "RATE_LIMIT_MFA_ATTEMPT_PER_WINDOW", ge=1
    )
    rate_limit_session_check_per_window: int = env_field(
        600, "RATE_LIMIT_SESSION_CHECK_PER_WINDOW", ge=1
    )
    backoff_base_ms: int = env_field(1000, "BACKOFF_BASE_MS", ge=1)
    backoff_cap_ms: int = env_field(60_000, "BACKOFF_CAP_MS", ge=1)

    trusted_applications: list[str] = env_field(
        [],
        "TRUSTED_APPLICATIONS",
        description="Comma-separated application ids in the SSO trust domain; empty trusts all",
    )
    trusted_issuers: list[str] = env_field(
        [],
        "TRUSTED_ISSUERS",
        description="Comma-separated federation issuers; empty accepts any issuer",
    )
    federation_shared_secret: str | None = env_field(None, "FEDERATION_SHARED_SECRET")
    step_up_policy: dict[str, str] = env_field(
        DEFAULT_STEP_UP_POLICY,
        "STEP_UP_POLICY",
        description="JSON object mapping operation name to minimum assurance level",
    )

    session_cache_ttl_ms: int = env_field(
        500,
        "SESSION_CACHE_TTL_MS",
        ge=0,
        description="Maximum staleness of a local session snapshot",
    )
    store_timeout_seconds: float = env_field(1.5, "STORE_TIMEOUT_SECONDS", gt=0)
    rate_limit_timeout_seconds: float = env_field(1.5, "RATE_LIMIT_TIMEOUT_SECONDS", gt=0)
    cleanup_interval_seconds: int = env_field(300, "CLEANUP_INTERVAL_SECONDS", ge=0)

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

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
        return cls(**merged)

    @field_validator("trusted_applications", "trusted_issuers", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("step_up_policy", mode="before")
    @classmethod
    def _parse_policy(cls, value: Any) -> dict[str, str]:
        if value is None or value == "":
            return dict(DEFAULT_STEP_UP_POLICY)
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("STEP_UP_POLICY must be a JSON object") from exc
        if not isinstance(value, dict):
            raise ValueError("STEP_UP_POLICY must be a JSON object")
        allowed = {"basic", "mfa_verified"}
        policy: dict[str, str] = {}
        for operation, level in value.items():
            level_str = str(level).lower()
            if level_str not in allowed:
                raise ValueError(f"unknown assurance level '{level}' for '{operation}'")
            policy[str(operation)] = level_str
        return policy

    @model_validator(mode="after")
    def _check_backoff(self) -> "Settings":
        if self.backoff_cap_ms < self.backoff_base_ms:
            raise ValueError("BACKOFF_CAP_MS must be >= BACKOFF_BASE_MS")
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so tokens stay valid across restarts
        state_dir = Path(info.data.get("state_dir") or "/var/lib/icsession")
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(state_dir))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make ICS_STATE_DIR writable"
            ) from exc
        return generated

    def rate_limit_for(self, operation_class: str) -> int:
        """Requests allowed per window for an operation class."""
        if operation_class not in RATE_LIMIT_CLASSES:
            raise ValueError(f"unknown rate limit class '{operation_class}'")
        return getattr(self, f"rate_limit_{operation_class}_per_window")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
