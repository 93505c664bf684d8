from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Header, Response

from shield.api.schemas import (
    ClaimsResponse,
    Envelope,
    LoginRequest,
    TokenRefreshRequest,
    TokenResponse,
)
from shield.service.auth import AuthService, TokenPair
from shield.service.errors import AuthenticationError, ValidationError
from shield.service.runtime import get_runtime

router = APIRouter(prefix="/v1")

# Endpoints are sync; blocking store calls run in the FastAPI threadpool.


def _require_bearer(authorization: Optional[str]) -> str:
    token = AuthService.extract_bearer(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    return token


def _token_envelope(tokens: TokenPair) -> Envelope:
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
        ),
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest):
    """Exchange email and password for an access and refresh token pair.

    Raises:
        401: If the credentials do not match an active user
        503: If the session store is unavailable
    """
    runtime = get_runtime()
    tokens = runtime.auth.password_login(body.email, body.password)
    return _token_envelope(tokens)


@router.post("/refresh", response_model=Envelope, tags=["auth"])
def refresh(
    body: Optional[TokenRefreshRequest] = Body(None),
    refresh_token_header: Optional[str] = Header(
        None, alias="refreshToken", convert_underscores=False
    ),
):
    """Issue a fresh access token for the session behind a refresh token.

    The token is read from the JSON body, or from the ``refreshToken``
    header for older clients.
    """
    token = (body.refresh_token if body else None) or refresh_token_header
    if not token:
        raise ValidationError(
            "refresh token is required", detail={"field": "refresh_token"}
        )
    runtime = get_runtime()
    tokens = runtime.auth.refresh_login(token)
    return _token_envelope(tokens)


@router.post("/logout", status_code=204, tags=["auth"])
def logout(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    runtime.auth.logout(_require_bearer(authorization))
    return Response(status_code=204)


@router.get("/session", response_model=Envelope, tags=["auth"])
def current_session(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    claims = runtime.auth.authenticate(_require_bearer(authorization))
    return Envelope(
        status="ok",
        data=ClaimsResponse(
            user_id=claims.user_id,
            email=claims.email,
            role=claims.role,
            tenant_id=claims.tenant_id,
            session_id=claims.session_id,
            expires_at=claims.expires_at,
        ),
    )
