from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from typing import Any

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import InvalidInputError
from authcore.service.tokens import encode_segment
from authcore.storage.models import CsrfPair

logger = get_logger(__name__)

_CSRF_KEY_LABEL = b"authcore/csrf/v1"
_CSRF_VALUE = re.compile(r"([A-Za-z0-9_-]{16,128})\.([A-Za-z0-9_-]{43})")
NONCE_BYTES = 32


class CsrfGuard:
    """Double-submit CSRF tokens bound to a session id.

    The cookie value is ``nonce.mac`` where the MAC covers the session id and
    the nonce under a key derived from the server secret. Nothing is stored
    server-side: a value is valid for exactly the session it was minted for,
    and the client must echo the cookie in a header that a cross-site page
    cannot read.
    """

    def __init__(self, secret_key: bytes) -> None:
        if not secret_key:
            raise ValueError("secret_key is required")
        # Separate key so CSRF values can never double as token signatures
        self._key = hmac.new(secret_key, _CSRF_KEY_LABEL, hashlib.sha256).digest()

    @classmethod
    def from_settings(cls, settings: Settings) -> "CsrfGuard":
        return cls(settings.secret_key_bytes)

    def _mac(self, session_id: str, nonce: str) -> str:
        message = f"{len(session_id)}:{session_id}:{nonce}".encode("utf-8")
        return encode_segment(hmac.new(self._key, message, hashlib.sha256).digest())

    def issue(self, session_id: str) -> CsrfPair:
        if not isinstance(session_id, str) or not session_id:
            raise InvalidInputError("session_id must be a non-empty string")
        nonce = secrets.token_urlsafe(NONCE_BYTES)
        value = f"{nonce}.{self._mac(session_id, nonce)}"
        return CsrfPair(cookie_value=value, header_value=value)

    def verify(self, session_id: Any, cookie_value: Any, header_value: Any) -> bool:
        """True only for matching cookie/header values minted for ``session_id``.

        Never raises; anything missing or malformed is a failed check.
        """
        try:
            if not all(
                isinstance(v, str) and v for v in (session_id, cookie_value, header_value)
            ):
                return False
            if not hmac.compare_digest(
                cookie_value.encode("utf-8"), header_value.encode("utf-8")
            ):
                return False
            match = _CSRF_VALUE.fullmatch(cookie_value)
            if match is None:
                return False
            nonce, mac = match.groups()
            return hmac.compare_digest(self._mac(session_id, nonce), mac)
        except Exception as exc:  # noqa: BLE001
            logger.warning("csrf_verify_error", error_type=type(exc).__name__)
            return False

    def verify_pair(self, session_id: Any, pair: Any) -> bool:
        if not isinstance(pair, CsrfPair):
            return False
        return self.verify(session_id, pair.cookie_value, pair.header_value)


__all__ = ["CsrfGuard"]
