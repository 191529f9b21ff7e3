from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.models import Credential


class MemoryCredentialStore:
    """In-memory credential store with optional JSON persistence.

    When ``state_path`` is set, every write is mirrored to
    ``<state_path>/credentials.json`` and the file is read back at start-up.
    """

    def __init__(self, state_path: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.credentials: Dict[str, Credential] = {}
        # RLock so persistence can run while a write holds the lock
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_path) if state_path else None
        self.state_file = self.state_dir / "credentials.json" if self.state_dir else None
        if self.state_dir is not None:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _load_state(self) -> bool:
        path = self.state_file
        if path is None or not path.exists():
            return False
        try:
            data = json.loads(path.read_text())
            if not isinstance(data, dict):
                raise ValueError("state file is not a JSON object")
            loaded = {
                item["subject_id"]: Credential.from_dict(item)
                for item in data.get("credentials", [])
            }
        except (OSError, KeyError, TypeError, ValueError) as exc:
            self.logger.error("credential_state_load_failed", path=str(path), error=str(exc))
            return False
        with self._data_lock:
            self.credentials = loaded
        return True

    def _persist_state(self, credentials: Dict[str, Credential]) -> None:
        if self.state_dir is None or self.state_file is None:
            return
        payload = {"credentials": [c.to_dict() for c in credentials.values()]}
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.state_dir), prefix=".credentials_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(payload, handle)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.state_file)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def find_credential(self, subject_id: str) -> Optional[Credential]:
        with self._data_lock:
            return self.credentials.get(subject_id)

    def save_credential(self, credential: Credential) -> None:
        """Store ``credential``; memory only changes once the state file is written."""
        with self._data_lock:
            existing = self.credentials.get(credential.subject_id)
            if existing is not None:
                credential = replace(
                    credential,
                    created_at=existing.created_at,
                    updated_at=datetime.now(timezone.utc),
                )
            updated = {**self.credentials, credential.subject_id: credential}
            self._persist_state(updated)
            self.credentials = updated

    def delete_credential(self, subject_id: str) -> bool:
        with self._data_lock:
            if subject_id not in self.credentials:
                return False
            remaining = {k: v for k, v in self.credentials.items() if k != subject_id}
            self._persist_state(remaining)
            self.credentials = remaining
        return True

    def list_subjects(self) -> List[str]:
        with self._data_lock:
            return sorted(self.credentials)
