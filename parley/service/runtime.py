from __future__ import annotations

import asyncio
import threading
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from parley.config import Settings, get_settings, reset_settings_cache
from parley.logging import get_logger
from parley.service.agent import AgentRuntime
from parley.service.auth import AuthService
from parley.service.chat import ConversationOrchestrator, LocalRunSlots
from parley.service.checkpoints import CheckpointSaver
from parley.service.model_backend import ModelBackend, ModelConfig, build_backend
from parley.service.quota import QuotaLedger
from parley.service.summary import SummaryGenerator
from parley.storage.memory import MemoryStore
from parley.storage.postgres import PostgresStore
from parley.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username}:***@{netloc}" if parsed.username else f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def model_config_from_settings(settings: Settings) -> ModelConfig:
    return ModelConfig(
        model=settings.model_name,
        api_key=settings.model_api_key,
        base_url=settings.model_base_url,
        temperature=settings.model_temperature,
        max_output_tokens=settings.model_max_output_tokens,
        timeout_seconds=settings.model_timeout_seconds,
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self) -> None:
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, fs_root=self.settings.shared_fs_root)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: RedisCache | SyncRedisCache | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode so per-test event loops never own the pool
                cache = (
                    SyncRedisCache(self.settings.redis_url)
                    if self.settings.test_mode
                    else RedisCache(self.settings.redis_url)
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for run admission; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; run admission is per-process only.",
                mode=fallback_mode,
            )
        self.run_slots = self.cache or LocalRunSlots()

        # replaceable so tests can script the model without network access
        self.backend_factory: Callable[[ModelConfig], ModelBackend] = build_backend
        self.model_config = model_config_from_settings(self.settings)

        self.auth = AuthService(self.store, self.settings)
        self.checkpoints = CheckpointSaver(
            self.store, default_list_limit=self.settings.checkpoint_list_limit
        )
        self.quota = QuotaLedger(self.store, default_limit=self.settings.daily_response_limit)
        self.agent = AgentRuntime(
            self.checkpoints,
            self.model_config,
            backend_factory=self._build_backend,
            max_steps=self.settings.agent_max_steps,
        )
        self.summaries = SummaryGenerator(
            self.store,
            self.model_config,
            backend_factory=self._build_backend,
            message_limit=self.settings.summary_message_limit,
            max_chars=self.settings.summary_max_chars,
            timeout_seconds=self.settings.summary_timeout_seconds,
        )
        self.chat = ConversationOrchestrator(
            self.store,
            self.agent,
            self.checkpoints,
            self.quota,
            self.summaries,
            run_slots=self.run_slots,
            resolve_model_key=self.auth.resolve_model_key,
            history_limit=self.settings.chat_history_limit,
            run_slot_ttl_seconds=self.settings.run_slot_ttl_seconds,
            run_timeout_seconds=self.settings.model_timeout_seconds,
        )

        logger.info(
            "runtime_initialized",
            model=self.model_config.model,
            model_key_configured=bool(self.model_config.api_key),
            redis_enabled=self.cache is not None,
            personal_keys_enabled=bool(self.settings.user_key_encryption_key),
        )

    def _build_backend(self, config: ModelConfig) -> ModelBackend:
        return self.backend_factory(config)

    async def close(self) -> None:
        self.agent.shutdown(wait=False)
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.agent.shutdown(wait=False)
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
            elif runtime.cache is not None:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
