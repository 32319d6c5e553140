from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from parley.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the chat service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/parley", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/parley", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables test-only behaviour such as runtime resets and the sync Redis client",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("parley", "JWT_ISSUER")
    jwt_audience: str = env_field("parley-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60 * 24,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of issued bearer tokens",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    user_key_encryption_key: str | None = env_field(
        None,
        "USER_KEY_ENCRYPTION_KEY",
        description="Key material for encrypting personal model credentials at rest",
    )

    model_api_key: str | None = env_field(None, "MODEL_API_KEY")
    model_base_url: str | None = env_field(None, "MODEL_BASE_URL")
    model_name: str = env_field("gemini-2.5-flash", "MODEL_NAME")
    model_temperature: float = env_field(0.4, "MODEL_TEMPERATURE")
    model_max_output_tokens: int = env_field(2048, "MODEL_MAX_OUTPUT_TOKENS")
    model_timeout_seconds: float = env_field(
        120.0,
        "MODEL_TIMEOUT_SECONDS",
        description="Deadline for one agent run, including tool steps",
    )
    summary_timeout_seconds: float = env_field(30.0, "SUMMARY_TIMEOUT_SECONDS")
    agent_max_steps: int = env_field(8, "AGENT_MAX_STEPS")

    daily_response_limit: int = env_field(20, "DAILY_RESPONSE_LIMIT")
    chat_history_limit: int = env_field(12, "CHAT_HISTORY_LIMIT")
    summary_message_limit: int = env_field(20, "SUMMARY_MESSAGE_LIMIT")
    summary_max_chars: int = env_field(4000, "SUMMARY_MAX_CHARS")
    checkpoint_list_limit: int = env_field(20, "CHECKPOINT_LIST_LIMIT")
    run_slot_ttl_seconds: int = env_field(
        600,
        "RUN_SLOT_TTL_SECONDS",
        description="Expiry for per-thread run slots held in Redis",
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator("redis_url", "model_api_key", "model_base_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/parley"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
