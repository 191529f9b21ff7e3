from __future__ import annotations

import asyncio
import threading
import time
from typing import Any, Callable, Optional, Protocol, Sequence, Union

from authcore.logging import get_logger
from authcore.service.csrf import CsrfGuard
from authcore.service.errors import (
    AuthenticationFailedError,
    CsrfValidationError,
    InvalidInputError,
    MalformedHashError,
    StoreUnavailableError,
    VerificationError,
)
from authcore.service.passwords import PasswordHasher
from authcore.service.tokens import TokenAuthority, TokenInput
from authcore.storage.models import (
    Credential,
    CsrfPair,
    LoginResult,
    RevocationEntry,
    SessionState,
    TokenClaims,
)
from authcore.storage.revocation import RevocationSet

logger = get_logger(__name__)

LOGOUT_REASON = "logout"
REVOKED_REASON = "revoked"

CsrfInput = Union[CsrfPair, Sequence[Optional[str]], None]


class CredentialStore(Protocol):
    def find_credential(self, subject_id: str) -> Optional[Credential]: ...

    def save_credential(self, credential: Credential) -> None: ...

    def delete_credential(self, subject_id: str) -> bool: ...


def _coerce_pair(csrf: CsrfInput) -> tuple[Optional[str], Optional[str]]:
    if isinstance(csrf, CsrfPair):
        return csrf.cookie_value, csrf.header_value
    if isinstance(csrf, (tuple, list)) and len(csrf) == 2:
        return csrf[0], csrf[1]
    return None, None


class AuthSessionCoordinator:
    """Login, authorize and logout over the hasher, token authority and CSRF guard.

    The coordinator owns the revocation set handle; the token authority is
    given the same handle so ``verify`` rejects revoked token ids. Password
    hashing, token verification and store calls run in worker threads so a
    single event loop keeps serving other requests during an expensive hash.
    Store calls are bounded by ``store_timeout`` and any store fault is raised
    as StoreUnavailableError, never as an authentication failure.
    """

    def __init__(
        self,
        hasher: PasswordHasher,
        tokens: TokenAuthority,
        csrf: CsrfGuard,
        store: CredentialStore,
        *,
        revocations: Optional[RevocationSet] = None,
        store_timeout: float = 2.0,
        prune_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.hasher = hasher
        self.tokens = tokens
        self.csrf = csrf
        self.store = store
        self.revocations = revocations if revocations is not None else tokens.revocations
        if self.revocations is None:
            raise ValueError("a revocation set is required")
        if tokens.revocations is None:
            tokens.revocations = self.revocations
        elif tokens.revocations is not self.revocations:
            raise ValueError("token authority must share the coordinator's revocation set")
        self.store_timeout = store_timeout
        self.prune_interval_seconds = prune_interval_seconds
        self._clock = clock
        self._prune_lock = threading.Lock()
        self._last_prune = clock()
        self.logger = logger

    async def _call_store(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args), timeout=self.store_timeout
            )
        except asyncio.TimeoutError as exc:
            self.logger.warning(
                "credential_store_timeout", operation=operation, timeout=self.store_timeout
            )
            raise StoreUnavailableError("credential store timed out") from exc
        except StoreUnavailableError:
            raise
        except Exception as exc:
            self.logger.error(
                "credential_store_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailableError("credential store unavailable") from exc

    async def login(self, username: str, raw_password: str) -> LoginResult:
        """Verify a password and open a session.

        Raises:
            AuthenticationFailedError: unknown user, wrong password or unusable hash
            StoreUnavailableError: the credential store could not answer
        """
        if not isinstance(username, str) or not username:
            raise AuthenticationFailedError("invalid credentials")
        if not isinstance(raw_password, str) or not raw_password:
            raise AuthenticationFailedError("invalid credentials")

        credential = await self._call_store(
            "find_credential", self.store.find_credential, username
        )
        if credential is None:
            await asyncio.to_thread(self.hasher.dummy_verify, raw_password)
            self.logger.info("login_failed", subject_id=username, reason="unknown_subject")
            raise AuthenticationFailedError("invalid credentials")

        try:
            valid = await asyncio.to_thread(
                self.hasher.verify, raw_password, credential.password_hash
            )
        except MalformedHashError:
            self.logger.error("stored_password_hash_malformed", subject_id=username)
            valid = False
        if not valid:
            self.logger.info("login_failed", subject_id=username, reason="password_mismatch")
            raise AuthenticationFailedError("invalid credentials")

        token = self.tokens.issue(username)
        pair = self.csrf.issue(token.token_id)
        await self._maybe_upgrade_hash(credential, raw_password)
        self.logger.info(
            "login_succeeded", subject_id=username, token_id=token.token_id
        )
        return LoginResult(subject_id=username, token=token, csrf=pair)

    async def _maybe_upgrade_hash(self, credential: Credential, raw_password: str) -> None:
        try:
            if not self.hasher.needs_rehash(credential.password_hash):
                return
            new_hash = await asyncio.to_thread(self.hasher.hash, raw_password)
            await self._call_store(
                "save_credential",
                self.store.save_credential,
                Credential(subject_id=credential.subject_id, password_hash=new_hash),
            )
            self.logger.info("password_hash_upgraded", subject_id=credential.subject_id)
        except (StoreUnavailableError, InvalidInputError, MalformedHashError) as exc:
            # The login itself already succeeded; retry on the next one
            self.logger.warning(
                "password_hash_upgrade_failed",
                subject_id=credential.subject_id,
                error_type=type(exc).__name__,
            )

    def authorize_sync(
        self,
        token: TokenInput,
        csrf: CsrfInput = None,
        is_state_changing: bool = False,
    ) -> str:
        """Blocking variant of ``authorize`` for thread-pool request workers."""
        try:
            claims = self.tokens.verify(token)
        except VerificationError as exc:
            self.logger.info("authorization_denied", check=type(exc).__name__)
            raise
        if is_state_changing:
            cookie_value, header_value = _coerce_pair(csrf)
            if not self.csrf.verify(claims.token_id, cookie_value, header_value):
                self.logger.info(
                    "authorization_denied",
                    check=CsrfValidationError.__name__,
                    token_id=claims.token_id,
                )
                raise CsrfValidationError("csrf validation failed")
        return claims.subject_id

    async def authorize(
        self,
        token: TokenInput,
        csrf: CsrfInput = None,
        is_state_changing: bool = False,
    ) -> str:
        """Return the subject id for a valid token.

        State-changing requests also need the CSRF cookie/header pair minted
        at login for this token.
        """
        return await asyncio.to_thread(
            self.authorize_sync, token, csrf, is_state_changing
        )

    async def logout(self, token: TokenInput) -> SessionState:
        """Revoke the presented token. Expired or already revoked tokens are accepted.

        Raises:
            MalformedTokenError, SignatureMismatchError: the token was never ours
        """
        claims: TokenClaims = await asyncio.to_thread(
            self.tokens.decode, token, check_expiry=False, check_revocation=False
        )
        entry: RevocationEntry = await asyncio.to_thread(
            self.tokens.revoke,
            claims.token_id,
            claims.expires_at,
            reason=LOGOUT_REASON,
        )
        await asyncio.to_thread(self.maybe_prune)
        return self._state_for_entry(entry)

    async def revoke(
        self, token_id: str, expires_at: Optional[float] = None
    ) -> RevocationEntry:
        """Administrative revocation of a token id."""
        return await asyncio.to_thread(
            self.tokens.revoke, token_id, expires_at, reason=REVOKED_REASON
        )

    @staticmethod
    def _state_for_entry(entry: RevocationEntry) -> SessionState:
        if entry.reason == LOGOUT_REASON:
            return SessionState.LOGGED_OUT
        return SessionState.REVOKED

    def session_state(self, token: Optional[TokenInput]) -> SessionState:
        """Place a presented token in the session state machine without raising."""
        if not token:
            return SessionState.ANONYMOUS
        try:
            claims = self.tokens.decode(token, check_expiry=False, check_revocation=False)
        except VerificationError:
            return SessionState.ANONYMOUS
        entry = self.revocations.get(claims.token_id)
        if entry is not None:
            return self._state_for_entry(entry)
        if self.tokens.is_expired(claims.expires_at):
            return SessionState.EXPIRED
        return SessionState.AUTHENTICATED

    async def enroll(self, subject_id: str, raw_password: str) -> Credential:
        """Hash ``raw_password`` and store it as the credential for ``subject_id``."""
        if not isinstance(subject_id, str) or not subject_id:
            raise InvalidInputError("subject_id must be a non-empty string")
        encoded = await asyncio.to_thread(self.hasher.hash, raw_password)
        credential = Credential(subject_id=subject_id, password_hash=encoded)
        await self._call_store("save_credential", self.store.save_credential, credential)
        self.logger.info("credential_enrolled", subject_id=subject_id)
        return credential

    async def change_password(
        self, subject_id: str, current_password: str, new_password: str
    ) -> Credential:
        credential = await self._call_store(
            "find_credential", self.store.find_credential, subject_id
        )
        if credential is None:
            raise AuthenticationFailedError("invalid credentials")
        try:
            valid = await asyncio.to_thread(
                self.hasher.verify, current_password, credential.password_hash
            )
        except MalformedHashError:
            self.logger.error("stored_password_hash_malformed", subject_id=subject_id)
            valid = False
        if not valid:
            raise AuthenticationFailedError("invalid credentials")
        return await self.enroll(subject_id, new_password)

    async def remove_credential(self, subject_id: str) -> bool:
        removed = await self._call_store(
            "delete_credential", self.store.delete_credential, subject_id
        )
        if removed:
            self.logger.info("credential_removed", subject_id=subject_id)
        return bool(removed)

    def prune_revocations(self) -> int:
        removed = self.revocations.prune()
        with self._prune_lock:
            self._last_prune = self._clock()
        return removed

    def maybe_prune(self, interval_seconds: Optional[float] = None) -> int:
        """Prune if ``interval_seconds`` have passed since the last prune.

        Defaults to the coordinator's ``prune_interval_seconds``.

        Returns:
            Number of entries removed, or 0 if pruning was skipped
        """
        if interval_seconds is None:
            interval_seconds = self.prune_interval_seconds
        with self._prune_lock:
            due = self._clock() - self._last_prune >= interval_seconds
        if not due:
            return 0
        try:
            return self.prune_revocations()
        except StoreUnavailableError:
            self.logger.warning("revocation_prune_skipped")
            return 0


__all__ = ["AuthSessionCoordinator", "CredentialStore"]
