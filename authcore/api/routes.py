from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from authcore.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    PasswordChangeRequest,
    SessionResponse,
)
from authcore.logging import get_logger
from authcore.service.errors import CsrfValidationError, MalformedTokenError
from authcore.service.runtime import get_runtime
from authcore.storage.models import CsrfPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@dataclass
class Principal:
    subject_id: str
    token: str


def _extract_bearer(header: Optional[str]) -> str:
    if not header:
        raise MalformedTokenError("authorization header missing")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        raise MalformedTokenError("authorization header is not a bearer token")
    return credentials.strip()


def _csrf_pair(request: Request) -> CsrfPair:
    settings = get_runtime().settings
    return CsrfPair(
        cookie_value=request.cookies.get(settings.csrf_cookie_name),
        header_value=request.headers.get(settings.csrf_header_name),
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    token = _extract_bearer(authorization)
    subject_id = await get_runtime().auth.authorize(token, is_state_changing=False)
    return Principal(subject_id=subject_id, token=token)


async def get_principal_for_write(
    request: Request, authorization: Optional[str] = Header(None)
) -> Principal:
    token = _extract_bearer(authorization)
    subject_id = await get_runtime().auth.authorize(
        token, _csrf_pair(request), is_state_changing=True
    )
    return Principal(subject_id=subject_id, token=token)


def _set_csrf_cookie(response: Response, value: str, max_age: int) -> None:
    settings = get_runtime().settings
    # Readable by same-origin script so it can be echoed in the CSRF header
    response.set_cookie(
        settings.csrf_cookie_name,
        value,
        httponly=False,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=max_age,
        path="/",
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with username and password.

    Returns a bearer token and sets the CSRF cookie; the same CSRF value is
    returned in the body for clients that cannot read cookies.

    Raises:
        401: If credentials are invalid
        503: If the credential store is unavailable
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.username, body.password)
    token = result.token
    _set_csrf_cookie(
        response,
        result.csrf.cookie_value or "",
        max_age=max(1, token.expires_at - token.issued_at),
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            subject_id=result.subject_id,
            access_token=token.encoded,
            expires_at=token.expires_at_datetime,
            csrf_token=result.csrf.header_value or "",
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    """Revoke the presented token. Repeating the call is harmless."""
    runtime = get_runtime()
    token = _extract_bearer(authorization)
    claims = await asyncio.to_thread(
        runtime.tokens.decode, token, check_expiry=False, check_revocation=False
    )
    pair = _csrf_pair(request)
    if not runtime.csrf.verify_pair(claims.token_id, pair):
        raise CsrfValidationError("csrf validation failed")
    state = await runtime.auth.logout(token)
    response.delete_cookie(
        runtime.settings.csrf_cookie_name,
        path="/",
        secure=runtime.settings.cookie_secure,
        samesite="strict",
    )
    return Envelope(status="ok", data={"state": state.value})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def get_session(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    claims = await asyncio.to_thread(runtime.tokens.decode, principal.token)
    return Envelope(
        status="ok",
        data=SessionResponse(
            subject_id=principal.subject_id,
            state=runtime.auth.session_state(principal.token).value,
            expires_at=claims.expires_at,
        ),
    )


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: Principal = Depends(get_principal_for_write),
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.subject_id, body.current_password, body.new_password
    )
    logger.info("password_changed", subject_id=principal.subject_id)
    return Envelope(status="ok", data={"status": "changed"})
