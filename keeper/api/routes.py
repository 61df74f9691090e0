from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from keeper.api.schemas import (
    AccountResponse,
    ChallengeRequest,
    ChallengeResponse,
    Envelope,
    ProfileRequest,
    RefreshRequest,
    SignInRequest,
    TokenResponse,
)
from keeper.logging import get_logger
from keeper.service.abilities import admin_ability, authorized_ability, superadmin_ability
from keeper.service.auth import normalize_username
from keeper.service.claims import Claims, TokenPair
from keeper.service.errors import InvalidTokenError
from keeper.service.runtime import get_runtime
from keeper.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")
health_router = APIRouter()


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "malformed authorization header", status_code=401)
    return token.strip()


async def get_claims(authorization: Optional[str] = Header(None)) -> Claims:
    """Verify the bearer access token and return its claims."""
    token = _bearer_token(authorization)
    runtime = get_runtime()
    try:
        return runtime.token_verifier.parse(token)
    except InvalidTokenError as exc:
        raise _http_error("unauthorized", exc.message, status_code=401) from exc


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_at=tokens.expires_at,
    )


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        username=account.username,
        account_type=account.account_type.value,
        role=account.account_type.label,
        created_at=account.created_at,
        role_changed_at=account.role_changed_at,
        updated_at=account.updated_at,
    )


@health_router.get("/healthcheck", response_model=Envelope, tags=["health"])
async def healthcheck():
    runtime = get_runtime()
    if runtime.lifecycle.closing:
        raise _http_error("service_unavailable", "shutting down", status_code=503)
    return Envelope(status="ok", data={"status": "healthy"})


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: ProfileRequest):
    """Create an account, or resume an unfinished signup, and return a challenge.

    Registering an existing username does not overwrite its password; the
    caller still has to prove the stored one at login.
    """
    runtime = get_runtime()
    challenge = await runtime.auth.create_profile(body.username, body.password)
    return Envelope(status="ok", data=ChallengeResponse(challenge=challenge))


@router.post("/challenge", response_model=Envelope, tags=["auth"])
async def challenge(body: ChallengeRequest):
    """Issue a fresh login challenge for an existing account.

    Raises:
        404: If the username is unknown
    """
    runtime = get_runtime()
    value = await runtime.auth.get_challenge(body.username)
    return Envelope(status="ok", data=ChallengeResponse(challenge=value))


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: SignInRequest):
    """Verify password and challenge code and return an access/refresh token pair.

    Raises:
        401: If the username is unknown or either credential does not match
    """
    runtime = get_runtime()
    tokens = await runtime.auth.sign_in(body.username, body.password, body.challenge)
    return Envelope(status="ok", data=_token_response(tokens))


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_response(tokens))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(claims: Claims = Depends(get_claims)):
    runtime = get_runtime()
    account = await runtime.auth.get_account_by_username(claims.role.name)
    return Envelope(status="ok", data=_account_response(account))


def _may_read_account(claims: Claims, username: str) -> bool:
    """Owners read their own record; admins and superadmins read any."""
    if claims.includes(authorized_ability(username)):
        return True
    return any(
        claims.includes(factory(claims.subject))
        for factory in (admin_ability, superadmin_ability)
    )


@router.get("/accounts/{username}", response_model=Envelope, tags=["auth"])
async def get_account(username: str, claims: Claims = Depends(get_claims)):
    """Look up an account record.

    Raises:
        403: If the caller is neither the owner nor an administrator
        404: If the username is unknown
    """
    try:
        username = normalize_username(username)
    except ValueError as exc:
        raise _http_error("validation_error", str(exc), status_code=400) from exc
    if not _may_read_account(claims, username):
        raise _http_error("forbidden", "insufficient abilities", status_code=403)
    runtime = get_runtime()
    account = await runtime.auth.get_account_by_username(username)
    return Envelope(status="ok", data=_account_response(account))
