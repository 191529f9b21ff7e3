from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Credential:
    subject_id: str
    password_hash: str
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "subject_id": self.subject_id,
            "password_hash": self.password_hash,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Credential":
        updated = data.get("updated_at")
        return cls(
            subject_id=data["subject_id"],
            password_hash=data["password_hash"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(updated) if updated else None,
        )


@dataclass(frozen=True)
class SessionToken:
    """A signed, expiring token bound to one subject.

    ``encoded`` is the compact ``header.payload.signature`` form handed to the
    transport; the other fields mirror the signed payload.
    """

    subject_id: str
    issued_at: int
    expires_at: int
    token_id: str
    signature: str
    encoded: str
    issuer: str = ""
    audience: str = ""

    def __str__(self) -> str:
        return self.encoded

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


@dataclass(frozen=True)
class TokenClaims:
    """Fields of a token that passed verification."""

    subject_id: str
    token_id: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class CsrfPair:
    cookie_value: Optional[str]
    header_value: Optional[str]


@dataclass(frozen=True)
class RevocationEntry:
    token_id: str
    revoked_at: float
    expires_at: float
    reason: str = "revoked"

    def to_dict(self) -> dict:
        return {
            "token_id": self.token_id,
            "revoked_at": self.revoked_at,
            "expires_at": self.expires_at,
            "reason": self.reason,
        }


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    REVOKED = "revoked"
    LOGGED_OUT = "logged_out"


@dataclass(frozen=True)
class LoginResult:
    subject_id: str
    token: SessionToken
    csrf: CsrfPair
