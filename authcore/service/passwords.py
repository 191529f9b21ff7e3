from __future__ import annotations

import re
import secrets
import threading
from typing import Optional

import bcrypt
from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type, extract_parameters
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from authcore.config import HashAlgorithm, Settings
from authcore.logging import get_logger
from authcore.service.errors import InvalidInputError, MalformedHashError

logger = get_logger(__name__)

# bcrypt silently ignores (or, in newer releases, rejects) input past 72 bytes
BCRYPT_MAX_PASSWORD_BYTES = 72
SALT_BYTES = 16

_BCRYPT_HASH = re.compile(r"\$2[aby]\$(\d{2})\$[./A-Za-z0-9]{53}")
_ARGON2ID_PREFIX = "$argon2id$"


class PasswordHasher:
    """One-way salted password hashing with a self-describing encoding.

    Every encoded hash carries its algorithm tag, work factor and salt, so
    verification never depends on the current configuration. Raising the
    configured work factor only affects new hashes; ``needs_rehash`` flags the
    old ones for upgrade at the next successful login.
    """

    def __init__(
        self,
        *,
        algorithm: HashAlgorithm = HashAlgorithm.ARGON2ID,
        work_factor: Optional[int] = None,
        max_password_length: int = 256,
        argon2_memory_cost_kib: int = 65536,
        argon2_parallelism: int = 4,
    ) -> None:
        self.algorithm = HashAlgorithm(algorithm)
        if work_factor is None:
            work_factor = 3 if self.algorithm == HashAlgorithm.ARGON2ID else 12
        self.work_factor = work_factor
        self.max_password_length = max_password_length
        self._memory_cost = argon2_memory_cost_kib
        self._parallelism = argon2_parallelism
        self._argon2 = self._argon2_hasher(work_factor)
        self._dummy_lock = threading.Lock()
        self._dummy_hash: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            algorithm=settings.password_algorithm,
            work_factor=settings.effective_work_factor,
            max_password_length=settings.max_password_length,
            argon2_memory_cost_kib=settings.argon2_memory_cost_kib,
            argon2_parallelism=settings.argon2_parallelism,
        )

    def _argon2_hasher(self, time_cost: int) -> Argon2Hasher:
        return Argon2Hasher(
            time_cost=time_cost,
            memory_cost=self._memory_cost,
            parallelism=self._parallelism,
            salt_len=SALT_BYTES,
            type=Type.ID,
        )

    def _validate_input(self, raw_password: str) -> None:
        if not isinstance(raw_password, str) or not raw_password:
            raise InvalidInputError("password must be a non-empty string")
        if len(raw_password) > self.max_password_length:
            raise InvalidInputError(
                "password exceeds maximum length",
                detail={"max_length": self.max_password_length},
            )

    def _acceptable_candidate(self, raw_password: str, algorithm: HashAlgorithm) -> bool:
        if not isinstance(raw_password, str) or not raw_password:
            return False
        if len(raw_password) > self.max_password_length:
            return False
        if (
            algorithm == HashAlgorithm.BCRYPT
            and len(raw_password.encode("utf-8")) > BCRYPT_MAX_PASSWORD_BYTES
        ):
            return False
        return True

    def hash(self, raw_password: str, work_factor: Optional[int] = None) -> str:
        """Hash ``raw_password`` with a fresh random salt.

        Raises:
            InvalidInputError: empty, too long, or a work factor the algorithm rejects
        """
        self._validate_input(raw_password)
        factor = self.work_factor if work_factor is None else work_factor
        if self.algorithm == HashAlgorithm.BCRYPT:
            encoded_pw = raw_password.encode("utf-8")
            if len(encoded_pw) > BCRYPT_MAX_PASSWORD_BYTES:
                raise InvalidInputError(
                    "password exceeds bcrypt input limit",
                    detail={"max_bytes": BCRYPT_MAX_PASSWORD_BYTES},
                )
            if not 4 <= factor <= 31:
                raise InvalidInputError("bcrypt work factor must be between 4 and 31")
            return bcrypt.hashpw(encoded_pw, bcrypt.gensalt(rounds=factor)).decode("ascii")
        if factor < 1:
            raise InvalidInputError("argon2id work factor must be at least 1")
        hasher = self._argon2 if factor == self.work_factor else self._argon2_hasher(factor)
        return hasher.hash(raw_password)

    def identify(self, encoded_hash: str) -> HashAlgorithm:
        """Return the algorithm tag embedded in ``encoded_hash``."""
        if not isinstance(encoded_hash, str) or not encoded_hash:
            raise MalformedHashError("empty password hash")
        if encoded_hash.startswith(_ARGON2ID_PREFIX):
            try:
                extract_parameters(encoded_hash)
            except InvalidHashError as exc:
                raise MalformedHashError("unparseable argon2id hash") from exc
            return HashAlgorithm.ARGON2ID
        if _BCRYPT_HASH.fullmatch(encoded_hash):
            return HashAlgorithm.BCRYPT
        raise MalformedHashError("unknown password hash format")

    def verify(self, raw_password: str, encoded_hash: str) -> bool:
        """Check ``raw_password`` against ``encoded_hash``.

        Returns False on any mismatch. Raises MalformedHashError only when the
        stored hash itself cannot be parsed.
        """
        algorithm = self.identify(encoded_hash)
        if not self._acceptable_candidate(raw_password, algorithm):
            return False
        if algorithm == HashAlgorithm.BCRYPT:
            try:
                return bcrypt.checkpw(
                    raw_password.encode("utf-8"), encoded_hash.encode("ascii")
                )
            except ValueError as exc:
                raise MalformedHashError("invalid bcrypt salt") from exc
        try:
            return self._argon2.verify(encoded_hash, raw_password)
        except VerifyMismatchError:
            return False
        except InvalidHashError as exc:
            raise MalformedHashError("unparseable argon2id hash") from exc
        except VerificationError:
            return False

    def needs_rehash(self, encoded_hash: str) -> bool:
        """True when ``encoded_hash`` was made with other algorithm or parameters."""
        algorithm = self.identify(encoded_hash)
        if algorithm != self.algorithm:
            return True
        if algorithm == HashAlgorithm.BCRYPT:
            match = _BCRYPT_HASH.fullmatch(encoded_hash)
            return match is None or int(match.group(1)) != self.work_factor
        return self._argon2.check_needs_rehash(encoded_hash)

    def dummy_verify(self, raw_password: str) -> None:
        """Spend the cost of one verification without a real credential.

        Keeps the timing of unknown-user logins close to wrong-password logins.
        """
        with self._dummy_lock:
            if self._dummy_hash is None:
                self._dummy_hash = self.hash(secrets.token_urlsafe(16))
            dummy = self._dummy_hash
        candidate = raw_password if isinstance(raw_password, str) and raw_password else "-"
        if len(candidate) > self.max_password_length:
            return
        try:
            self.verify(candidate, dummy)
        except MalformedHashError:
            logger.error("dummy_hash_invalid")
