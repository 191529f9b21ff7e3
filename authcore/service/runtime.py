from __future__ import annotations

import asyncio
import contextlib
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authcore.config import RevocationBackend, Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.csrf import CsrfGuard
from authcore.service.errors import StoreUnavailableError
from authcore.service.passwords import PasswordHasher
from authcore.service.session import AuthSessionCoordinator
from authcore.service.tokens import TokenAuthority
from authcore.storage.memory import MemoryCredentialStore
from authcore.storage.redis_cache import RedisRevocationSet
from authcore.storage.revocation import MemoryRevocationSet, RevocationSet

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password in a Redis URL before it is logged."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        host = parsed.hostname or ""
        if parsed.port:
            host = f"{host}:{parsed.port}"
        user = parsed.username or ""
        return urlunparse(parsed._replace(netloc=f"{user}:***@{host}"))
    except ValueError:
        return "<unparseable redis url>"


def build_revocation_set(settings: Settings) -> RevocationSet:
    """Create the process-wide revocation set selected by ``settings``."""
    leeway = settings.clock_skew_tolerance_seconds
    if settings.revocation_backend == RevocationBackend.REDIS:
        redis_set = RedisRevocationSet(
            settings.redis_url,
            leeway_seconds=leeway,
            socket_timeout=settings.store_timeout_seconds,
        )
        try:
            redis_set.verify_connection()
            return redis_set
        except StoreUnavailableError as exc:
            if not (settings.test_mode or settings.allow_redis_fallback_dev):
                raise RuntimeError(
                    "Redis is required for REVOCATION_BACKEND=redis; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for a local fallback."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                message="Revocations are process-local; other instances will not see them.",
            )
            redis_set.close()
    return MemoryRevocationSet(
        shards=settings.revocation_shards,
        leeway_seconds=leeway,
        state_path=settings.state_path,
    )


class Runtime:
    """Holds the wired service instances for the process.

    Lifecycle: constructed once at start-up, ``start`` schedules the periodic
    revocation prune, ``close`` cancels it and flushes persisted state.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            revocation_backend=self.settings.revocation_backend.value,
            password_algorithm=self.settings.password_algorithm.value,
            test_mode=self.settings.test_mode,
        )
        self.store = MemoryCredentialStore(state_path=self.settings.state_path)
        self.revocations = build_revocation_set(self.settings)
        self.hasher = PasswordHasher.from_settings(self.settings)
        self.tokens = TokenAuthority.from_settings(self.settings, self.revocations)
        self.csrf = CsrfGuard.from_settings(self.settings)
        self.auth = AuthSessionCoordinator(
            self.hasher,
            self.tokens,
            self.csrf,
            self.store,
            revocations=self.revocations,
            store_timeout=self.settings.store_timeout_seconds,
            prune_interval_seconds=self.settings.revocation_prune_interval_seconds,
        )
        self._prune_task: asyncio.Task | None = None
        logger.info("runtime_init_complete", revocation_set=type(self.revocations).__name__)

    async def _run_prune(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                removed = await asyncio.to_thread(self.auth.prune_revocations)
                if removed:
                    logger.info("revocations_pruned", removed=removed)
            except StoreUnavailableError as exc:
                logger.warning("revocation_prune_failed", error=str(exc))

    async def start(self) -> None:
        if self._prune_task is None or self._prune_task.done():
            self._prune_task = asyncio.create_task(
                self._run_prune(self.settings.revocation_prune_interval_seconds)
            )

    async def close(self) -> None:
        if self._prune_task is not None:
            self._prune_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._prune_task
            self._prune_task = None
        self.revocations.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the Runtime singleton and cached settings for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.revocations.close()
            except OSError as exc:
                logger.warning("runtime_reset_close_failed", error=str(exc))
        runtime = None
        reset_settings_cache()
