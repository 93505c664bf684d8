from __future__ import annotations

import contextlib
import secrets
from dataclasses import dataclass
from typing import Any, ContextManager, Iterator, Optional, Protocol

from shield.logging import get_logger, session_context
from shield.service.errors import (
    InvalidCredentialsError,
    ServerError,
    ServiceError,
    SessionNotFoundError,
    StoreUnavailableError,
    TokenExpiredError,
    TokenInvalidError,
)
from shield.service.passwords import CredentialVerifier
from shield.service.tokens import (
    AccessClaims,
    ExpiredToken,
    SigningFailure,
    TokenCodec,
    TokenError,
)
from shield.storage.errors import StoreError
from shield.storage.models import Session, User


class AuthTransaction(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_session(self, user_id: str) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> Optional[Session]: ...


class AuthStore(Protocol):
    def transaction(self) -> ContextManager[AuthTransaction]: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class AuthService:
    """Login, refresh, authenticate and logout over persisted sessions.

    A session row is the only revocation mechanism: deleting it invalidates
    every access and refresh token that names it. Each operation runs in a
    single store transaction that commits on success and aborts on any
    raised error.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        verifier: CredentialVerifier,
        *,
        logger: Any = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.verifier = verifier
        self.logger = logger or get_logger(__name__)
        self._timing_hash: Optional[str] = None

    @contextlib.contextmanager
    def _transaction(self, operation: str) -> Iterator[AuthTransaction]:
        try:
            with self.store.transaction() as tx:
                yield tx
        except StoreError as exc:
            self.logger.error(
                "store_unavailable",
                operation=operation,
                error=exc.message,
                detail=exc.detail,
            )
            raise StoreUnavailableError(
                "session store unavailable", detail={"operation": operation}
            ) from exc

    def password_login(self, email: str, secret: str) -> TokenPair:
        with self._transaction("password_login") as tx:
            user = tx.get_user_by_email(email)
            if not user or not user.is_active:
                # Same cost and same error as a wrong password
                self._burn_verification(secret)
                self.logger.info("login_failed", reason="invalid_credentials")
                raise InvalidCredentialsError("invalid credentials")
            record = tx.get_password_record(user.id)
            if not record:
                self.logger.warning("password_record_missing", user_id=user.id)
                self._burn_verification(secret)
                raise InvalidCredentialsError("invalid credentials")
            stored_hash, algo = record
            if not self.verifier.verify(secret, stored_hash, algo):
                self.logger.info(
                    "login_failed", reason="invalid_credentials", user_id=user.id
                )
                raise InvalidCredentialsError("invalid credentials")

            session = tx.create_session(user.id)
            tokens = TokenPair(
                access_token=self._sign_access(user, session.id),
                refresh_token=self._sign_refresh(session.id),
            )
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return tokens

    def authenticate(self, access_token: str) -> AccessClaims:
        claims = self._verify_access(access_token)
        with session_context(claims.session_id):
            with self._transaction("authenticate") as tx:
                session = tx.get_session(claims.session_id)
            if session is None:
                self.logger.info("authenticate_rejected", reason="session_not_found")
                raise SessionNotFoundError("session not found")
        return claims

    def refresh_login(self, refresh_token: str) -> TokenPair:
        """Issue a new access token for the session a refresh token names.

        A refresh token that fails verification is treated as compromised:
        when it still identifies a session, that session is deleted before
        the error is raised. The same refresh token is handed back on
        success; only the access token is reissued.
        """
        try:
            session_id = self.codec.verify_refresh(refresh_token)
        except TokenError as exc:
            self.logger.info("refresh_rejected", reason=type(exc).__name__)
            if exc.session_id:
                self._revoke(exc.session_id, reason="refresh_verification_failed")
            raise self._token_failure(exc) from exc

        with session_context(session_id):
            with self._transaction("refresh_login") as tx:
                if tx.get_session(session_id) is None:
                    raise SessionNotFoundError("session not found")
                session = tx.touch_session(session_id)
                if session is None:
                    # Deleted between read and write by a concurrent logout
                    raise SessionNotFoundError("session not found")
                user = tx.get_user(session.user_id)
                if not user or not user.is_active:
                    self.logger.warning(
                        "refresh_owner_missing", user_id=session.user_id
                    )
                    raise SessionNotFoundError("session not found")
                access_token = self._sign_access(user, session.id)
            self.logger.info("refresh_succeeded", user_id=user.id)
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    def logout(self, access_token: str) -> None:
        session_id: Optional[str] = None
        try:
            session_id = self.codec.verify_access(access_token).session_id
        except ExpiredToken as exc:
            # Expired but authentic; still good enough to clean up
            session_id = exc.session_id
        except TokenError as exc:
            self.logger.info("logout_token_unusable", reason=type(exc).__name__)
        if session_id:
            self._revoke(session_id, reason="logout")
        self.logger.info("logout_completed", session_id=session_id)

    def _revoke(self, session_id: str, *, reason: str) -> None:
        with session_context(session_id):
            with self._transaction("revoke_session") as tx:
                removed = tx.delete_session(session_id)
            self.logger.info(
                "session_revoked", reason=reason, existed=removed is not None
            )

    def _verify_access(self, access_token: str) -> AccessClaims:
        try:
            return self.codec.verify_access(access_token)
        except TokenError as exc:
            self.logger.info("authenticate_rejected", reason=type(exc).__name__)
            raise self._token_failure(exc) from exc

    def _sign_access(self, user: User, session_id: str) -> str:
        claims = AccessClaims(
            email=user.email,
            user_id=user.id,
            role=user.role,
            session_id=session_id,
            tenant_id=user.tenant_id,
        )
        try:
            return self.codec.sign_access(claims)
        except SigningFailure as exc:
            raise ServerError("failed to issue access token") from exc

    def _sign_refresh(self, session_id: str) -> str:
        try:
            return self.codec.sign_refresh(session_id)
        except SigningFailure as exc:
            raise ServerError("failed to issue refresh token") from exc

    def _token_failure(self, exc: TokenError) -> ServiceError:
        if isinstance(exc, ExpiredToken):
            return TokenExpiredError("token expired")
        return TokenInvalidError("token invalid")

    def _burn_verification(self, secret: str) -> None:
        if self._timing_hash is None:
            self._timing_hash = self.verifier.hash(secrets.token_urlsafe(16))
        self.verifier.verify(secret, self._timing_hash)

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
