from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import re
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Optional, Union

from authcore.config import Settings, SigningAlgorithm
from authcore.logging import get_logger
from authcore.service.errors import (
    ExpiredError,
    InvalidInputError,
    MalformedTokenError,
    RevokedError,
    ServerError,
    SignatureMismatchError,
)
from authcore.storage.models import RevocationEntry, SessionToken, TokenClaims
from authcore.storage.revocation import RevocationSet

logger = get_logger(__name__)

_DIGESTS = {
    SigningAlgorithm.HS256: hashlib.sha256,
    SigningAlgorithm.HS384: hashlib.sha384,
    SigningAlgorithm.HS512: hashlib.sha512,
}
_SEGMENT = re.compile(r"[A-Za-z0-9_-]+")
MAX_TOKEN_LENGTH = 4096

TokenInput = Union[str, SessionToken]


def canonical_json(data: dict[str, Any]) -> bytes:
    """Serialize ``data`` so equal payloads always produce equal bytes."""
    return json.dumps(
        data, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class TokenAuthority:
    """Issues and verifies HMAC-signed, expiring session tokens.

    Tokens use the compact ``header.payload.signature`` layout with canonical
    JSON segments. The signature is checked over the raw segments before any
    decoding, so a tampered token is reported as a signature mismatch rather
    than as a parse failure. The only state consulted is the revocation set
    handed in by the owner.
    """

    def __init__(
        self,
        secret_key: bytes,
        *,
        algorithm: SigningAlgorithm = SigningAlgorithm.HS256,
        issuer: str = "authcore",
        audience: str = "authcore-clients",
        default_ttl_seconds: int = 15 * 60,
        max_ttl_seconds: int = 24 * 60 * 60,
        clock_skew_seconds: int = 30,
        revocations: Optional[RevocationSet] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret_key:
            raise ValueError("secret_key is required")
        self._key = secret_key
        self.algorithm = SigningAlgorithm(algorithm)
        self._digest = _DIGESTS[self.algorithm]
        self.issuer = issuer
        self.audience = audience
        self.default_ttl_seconds = default_ttl_seconds
        self.max_ttl_seconds = max_ttl_seconds
        self.clock_skew_seconds = clock_skew_seconds
        self.revocations = revocations
        self._clock = clock
        self._header_segment = encode_segment(
            canonical_json({"alg": self.algorithm.value, "typ": "JWT"})
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        revocations: Optional[RevocationSet] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> "TokenAuthority":
        return cls(
            settings.secret_key_bytes,
            algorithm=settings.signing_algorithm,
            issuer=settings.token_issuer,
            audience=settings.token_audience,
            default_ttl_seconds=settings.token_ttl_seconds,
            max_ttl_seconds=settings.max_token_ttl_seconds,
            clock_skew_seconds=settings.clock_skew_tolerance_seconds,
            revocations=revocations,
            clock=clock,
        )

    def now(self) -> int:
        return int(self._clock())

    def is_expired(self, expires_at: int, at: Optional[float] = None) -> bool:
        """True once the clock is past ``expires_at`` plus the skew tolerance.

        Compares against the unrounded clock, the same one revocation pruning
        uses, so an entry is never pruned while its token still passes here.
        """
        current = self._clock() if at is None else at
        return current > expires_at + self.clock_skew_seconds

    def _sign(self, signing_input: str) -> str:
        mac = hmac.new(
            self._key, signing_input.encode("utf-8", "surrogatepass"), self._digest
        )
        return encode_segment(mac.digest())

    def _ttl_seconds(self, ttl: Union[int, float, timedelta, None]) -> int:
        if ttl is None:
            return self.default_ttl_seconds
        if isinstance(ttl, timedelta):
            seconds = ttl.total_seconds()
        elif isinstance(ttl, (int, float)) and not isinstance(ttl, bool):
            seconds = float(ttl)
        else:
            raise InvalidInputError("ttl must be a number of seconds or a timedelta")
        if seconds <= 0:
            raise InvalidInputError("ttl must be positive")
        if seconds > self.max_ttl_seconds:
            raise InvalidInputError(
                "ttl exceeds maximum token lifetime",
                detail={"max_ttl_seconds": self.max_ttl_seconds},
            )
        return max(1, int(seconds))

    def issue(
        self, subject_id: str, ttl: Union[int, float, timedelta, None] = None
    ) -> SessionToken:
        """Sign a new token for ``subject_id`` valid for ``ttl`` seconds."""
        if not isinstance(subject_id, str) or not subject_id:
            raise InvalidInputError("subject_id must be a non-empty string")
        lifetime = self._ttl_seconds(ttl)
        issued_at = self.now()
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject_id,
            "iat": issued_at,
            "exp": issued_at + lifetime,
            "jti": str(uuid.uuid4()),
        }
        signing_input = f"{self._header_segment}.{encode_segment(canonical_json(payload))}"
        signature = self._sign(signing_input)
        return SessionToken(
            subject_id=subject_id,
            issued_at=payload["iat"],
            expires_at=payload["exp"],
            token_id=payload["jti"],
            signature=signature,
            encoded=f"{signing_input}.{signature}",
            issuer=self.issuer,
            audience=self.audience,
        )

    def verify(self, token: TokenInput) -> TokenClaims:
        """Full verification: signature, shape, expiry and revocation.

        Raises:
            MalformedTokenError, SignatureMismatchError, ExpiredError, RevokedError
            StoreUnavailableError: the revocation store could not be consulted
        """
        return self.decode(token)

    def decode(
        self,
        token: TokenInput,
        *,
        check_expiry: bool = True,
        check_revocation: bool = True,
    ) -> TokenClaims:
        encoded = token.encoded if isinstance(token, SessionToken) else token
        if not isinstance(encoded, str) or not encoded:
            raise MalformedTokenError("token missing")
        if len(encoded) > MAX_TOKEN_LENGTH:
            raise MalformedTokenError("token too long")
        segments = encoded.split(".")
        if len(segments) != 3 or not all(segments):
            raise MalformedTokenError("token is not three segments")
        header_b64, payload_b64, signature_b64 = segments

        expected = self._sign(f"{header_b64}.{payload_b64}")
        presented = signature_b64.encode("utf-8", "surrogatepass")
        if not hmac.compare_digest(expected.encode("ascii"), presented):
            raise SignatureMismatchError("token signature mismatch")
        if not all(_SEGMENT.fullmatch(s) for s in segments):
            raise MalformedTokenError("token segments are not base64url")

        header = self._load_segment(header_b64, "header")
        if header.get("alg") != self.algorithm.value or header.get("typ") != "JWT":
            logger.warning("token_header_rejected", alg=header.get("alg"))
            raise MalformedTokenError("unexpected token header")

        claims = self._claims(self._load_segment(payload_b64, "payload"))
        current = self._clock()
        if claims.issued_at > current + self.clock_skew_seconds:
            raise MalformedTokenError("token issued in the future")
        if check_expiry and self.is_expired(claims.expires_at, current):
            raise ExpiredError("token expired")
        if check_revocation and self.is_revoked(claims.token_id):
            raise RevokedError("token revoked")
        return claims

    def _load_segment(self, segment: str, name: str) -> dict[str, Any]:
        try:
            data = json.loads(decode_segment(segment))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            logger.warning("token_segment_decode_failed", segment=name)
            raise MalformedTokenError(f"token {name} is not valid JSON") from exc
        if not isinstance(data, dict):
            raise MalformedTokenError(f"token {name} is not an object")
        return data

    def _claims(self, payload: dict[str, Any]) -> TokenClaims:
        subject = payload.get("sub")
        token_id = payload.get("jti")
        issued_at = payload.get("iat")
        expires_at = payload.get("exp")
        if not isinstance(subject, str) or not subject:
            raise MalformedTokenError("token subject missing")
        if not isinstance(token_id, str) or not token_id:
            raise MalformedTokenError("token id missing")
        if not _is_int(issued_at) or not _is_int(expires_at):
            raise MalformedTokenError("token timestamps must be integers")
        if expires_at <= issued_at:
            raise MalformedTokenError("token expires before it was issued")
        if payload.get("iss") != self.issuer:
            raise MalformedTokenError("token issuer mismatch")
        audience = payload.get("aud")
        if isinstance(audience, list):
            valid_audience = self.audience in audience
        else:
            valid_audience = audience == self.audience
        if not valid_audience:
            raise MalformedTokenError("token audience mismatch")
        return TokenClaims(
            subject_id=subject,
            token_id=token_id,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def is_revoked(self, token_id: str) -> bool:
        if self.revocations is None:
            return False
        return token_id in self.revocations

    def revoke(
        self,
        token_id: str,
        expires_at: Optional[float] = None,
        *,
        reason: str = "revoked",
    ) -> RevocationEntry:
        """Add ``token_id`` to the revocation set; repeated calls are no-ops.

        Without ``expires_at`` the entry is kept for the maximum token lifetime.
        """
        if self.revocations is None:
            raise ServerError("token revocation is not configured")
        if not isinstance(token_id, str) or not token_id:
            raise InvalidInputError("token_id must be a non-empty string")
        if expires_at is None:
            expires_at = self.now() + self.max_ttl_seconds
        entry = self.revocations.add(token_id, expires_at, reason=reason)
        logger.info("token_revoked", token_id=token_id, reason=entry.reason)
        return entry


__all__ = [
    "TokenAuthority",
    "canonical_json",
    "encode_segment",
    "decode_segment",
]
