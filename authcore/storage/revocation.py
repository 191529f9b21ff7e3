from __future__ import annotations

import json
import os
import tempfile
import threading
import time
import zlib
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

from authcore.logging import get_logger
from authcore.storage.models import RevocationEntry

logger = get_logger(__name__)


class RevocationSet(Protocol):
    """Token ids that must be rejected before their natural expiry."""

    def add(
        self, token_id: str, expires_at: float, *, reason: str = "revoked"
    ) -> RevocationEntry: ...

    def get(self, token_id: str) -> Optional[RevocationEntry]: ...

    def __contains__(self, token_id: object) -> bool: ...

    def prune(self, now: Optional[float] = None) -> int: ...

    def close(self) -> None: ...


class _Shard:
    __slots__ = ("lock", "entries")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.entries: Dict[str, RevocationEntry] = {}


class MemoryRevocationSet:
    """Process-local revocation set split into independently locked shards.

    Lookups run on every authorization while inserts only happen on logout,
    so contention is kept per shard. Entries are dropped by ``prune`` once the
    token they block has expired past the skew leeway. When ``state_path`` is
    given the set is loaded at construction and written back by ``close``.
    """

    def __init__(
        self,
        *,
        shards: int = 16,
        leeway_seconds: float = 0.0,
        state_path: Optional[str | Path] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards: List[_Shard] = [_Shard() for _ in range(shards)]
        self._leeway = leeway_seconds
        self._clock = clock
        self._state_file = Path(state_path) / "revocations.json" if state_path else None
        if self._state_file is not None:
            self._load()

    def _shard(self, token_id: str) -> _Shard:
        index = zlib.crc32(token_id.encode("utf-8")) % len(self._shards)
        return self._shards[index]

    def add(
        self, token_id: str, expires_at: float, *, reason: str = "revoked"
    ) -> RevocationEntry:
        """Insert ``token_id``; a second call keeps the first entry."""
        shard = self._shard(token_id)
        with shard.lock:
            existing = shard.entries.get(token_id)
            if existing is not None:
                return existing
            entry = RevocationEntry(
                token_id=token_id,
                revoked_at=self._clock(),
                expires_at=float(expires_at),
                reason=reason,
            )
            shard.entries[token_id] = entry
            return entry

    def get(self, token_id: str) -> Optional[RevocationEntry]:
        shard = self._shard(token_id)
        with shard.lock:
            return shard.entries.get(token_id)

    def __contains__(self, token_id: object) -> bool:
        if not isinstance(token_id, str):
            return False
        return self.get(token_id) is not None

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.entries)
        return total

    def prune(self, now: Optional[float] = None) -> int:
        """Remove entries whose token can no longer pass the expiry check."""
        cutoff = (self._clock() if now is None else now) - self._leeway
        removed = 0
        for shard in self._shards:
            with shard.lock:
                stale = [
                    token_id
                    for token_id, entry in shard.entries.items()
                    if entry.expires_at < cutoff
                ]
                for token_id in stale:
                    del shard.entries[token_id]
                removed += len(stale)
        if removed:
            logger.debug("revocations_pruned", removed=removed)
        return removed

    def snapshot(self) -> List[RevocationEntry]:
        entries: List[RevocationEntry] = []
        for shard in self._shards:
            with shard.lock:
                entries.extend(shard.entries.values())
        return entries

    def _load(self) -> None:
        if self._state_file is None or not self._state_file.exists():
            return
        try:
            raw = json.loads(self._state_file.read_text())
            if not isinstance(raw, dict):
                raise ValueError("state file is not a JSON object")
            items = raw.get("entries", [])
            if not isinstance(items, list):
                raise ValueError("entries is not a list")
        except (OSError, ValueError) as exc:
            logger.error(
                "revocation_state_load_failed",
                path=str(self._state_file),
                error=str(exc),
            )
            return
        for item in items:
            try:
                entry = RevocationEntry(
                    token_id=str(item["token_id"]),
                    revoked_at=float(item["revoked_at"]),
                    expires_at=float(item["expires_at"]),
                    reason=str(item.get("reason", "revoked")),
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("revocation_state_entry_skipped")
                continue
            self._shard(entry.token_id).entries[entry.token_id] = entry
        self.prune()

    def flush(self) -> None:
        """Write the current entries to the state file, if one is configured."""
        if self._state_file is None:
            return
        self.prune()
        payload = {"entries": [entry.to_dict() for entry in self.snapshot()]}
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._state_file.parent), prefix=".revocations_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(payload, handle)
            os.replace(tmp_path, self._state_file)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.info(
            "revocation_state_flushed",
            path=str(self._state_file),
            entries=len(payload["entries"]),
        )

    def close(self) -> None:
        self.flush()


__all__ = ["RevocationSet", "MemoryRevocationSet"]
