from __future__ import annotations

import math
import time
from typing import Any, Callable, Optional

from redis import Redis
from redis.exceptions import RedisError

from authcore.logging import get_logger
from authcore.service.errors import StoreUnavailableError
from authcore.storage.models import RevocationEntry

logger = get_logger(__name__)


class RedisRevocationSet:
    """Revocation set shared by every instance pointing at one Redis.

    Each revoked token id is a key whose TTL ends when the token can no longer
    pass the expiry check, so Redis prunes entries on its own. Redis failures
    surface as StoreUnavailableError: a lookup that cannot be answered must
    neither accept nor reject the token as if the answer were known.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Any = None,
        leeway_seconds: float = 0.0,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        key_prefix: str = "auth:revoked:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.redis_url = redis_url
        self.client = client
        self._leeway = leeway_seconds
        self._prefix = key_prefix
        self._clock = clock

    def _key(self, token_id: str) -> str:
        return f"{self._prefix}{token_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        try:
            self.client.ping()
        except RedisError as exc:
            raise StoreUnavailableError("revocation store unreachable") from exc

    def add(
        self, token_id: str, expires_at: float, *, reason: str = "revoked"
    ) -> RevocationEntry:
        now = self._clock()
        # One spare second: the key must outlive the exact instant the token
        # starts failing the expiry check
        ttl = max(1, math.ceil(expires_at + self._leeway - now) + 1)
        value = f"{now}|{float(expires_at)}|{reason}"
        try:
            # NX keeps the original entry when revoked twice
            self.client.set(self._key(token_id), value, ex=ttl, nx=True)
            stored = self.client.get(self._key(token_id))
        except RedisError as exc:
            logger.warning("revocation_store_write_failed", error=str(exc))
            raise StoreUnavailableError("revocation store unavailable") from exc
        return self._parse(token_id, stored) or RevocationEntry(
            token_id=token_id, revoked_at=now, expires_at=float(expires_at), reason=reason
        )

    def get(self, token_id: str) -> Optional[RevocationEntry]:
        try:
            stored = self.client.get(self._key(token_id))
        except RedisError as exc:
            logger.warning("revocation_store_read_failed", error=str(exc))
            raise StoreUnavailableError("revocation store unavailable") from exc
        return self._parse(token_id, stored)

    def __contains__(self, token_id: object) -> bool:
        if not isinstance(token_id, str):
            return False
        return self.get(token_id) is not None

    def prune(self, now: Optional[float] = None) -> int:
        # Key TTLs expire entries server-side
        return 0

    def close(self) -> None:
        try:
            self.client.close()
        except RedisError as exc:
            logger.warning("revocation_store_close_failed", error=str(exc))

    @staticmethod
    def _parse(token_id: str, stored: Optional[str]) -> Optional[RevocationEntry]:
        if stored is None:
            return None
        if isinstance(stored, bytes):
            stored = stored.decode("utf-8")
        parts = stored.split("|", 2)
        try:
            return RevocationEntry(
                token_id=token_id,
                revoked_at=float(parts[0]),
                expires_at=float(parts[1]),
                reason=parts[2] if len(parts) > 2 else "revoked",
            )
        except (IndexError, ValueError):
            # Unknown layout still means the key exists
            return RevocationEntry(
                token_id=token_id, revoked_at=0.0, expires_at=0.0, reason="revoked"
            )


__all__ = ["RedisRevocationSet"]
