from __future__ import annotations

import asyncio
import time
import unicodedata
from typing import Any, AsyncContextManager, Awaitable, Callable, Optional, Protocol, TypeVar

from keeper.logging import get_logger
from keeper.service import otp
from keeper.service.abilities import abilities_for
from keeper.service.claims import Role, TokenIssuer, TokenPair, TokenVerifier
from keeper.service.errors import (
    ConflictError,
    DeadlineExceededError,
    InvalidCredentialsError,
    NotFoundError,
    ServerError,
    ServiceError,
    TransientStorageError,
    ValidationError,
)
from keeper.service.lifecycle import Lifecycle
from keeper.service.passwords import PasswordVerifier
from keeper.storage.errors import ConstraintViolation, StorageUnavailable
from keeper.storage.models import Account, AccountType

logger = get_logger(__name__)

T = TypeVar("T")

# Shared by unknown usernames and bad credentials so callers cannot tell them apart
AUTH_FAILED_MESSAGE = "authentication failed"

MAX_USERNAME_LENGTH = 256
MAX_PASSWORD_LENGTH = 1024


def normalize_username(value: str) -> str:
    """NFKC-normalize and strip a username so lookalike forms collapse."""
    normalized = unicodedata.normalize("NFKC", value).strip()
    if not normalized:
        raise ValueError("username must not be empty")
    if any(unicodedata.category(ch).startswith("C") for ch in normalized):
        raise ValueError("username contains control characters")
    return normalized


class AccountDirectory(Protocol):
    def transaction(self, parent: Any = None) -> AsyncContextManager[Any]: ...

    async def lookup_by_username(self, tx: Any, username: str) -> Optional[Account]: ...

    async def insert(self, tx: Any, username: str, secret: bytes) -> Account: ...

    async def update_account_type(
        self, tx: Any, username: str, account_type: AccountType
    ) -> Optional[Account]: ...

    async def close(self) -> None: ...


class AuthService:
    """Account bootstrap, challenge issuance, sign-in and identity lookups.

    Every public operation runs inside exactly one directory transaction. The
    service itself keeps no per-request state, so any number of replicas can
    share one directory.
    """

    def __init__(
        self,
        directory: AccountDirectory,
        issuer: TokenIssuer,
        *,
        lifecycle: Lifecycle,
        verifier: Optional[PasswordVerifier] = None,
        otp_interval: int = otp.OTP_INTERVAL_SECONDS,
        default_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if directory is None:
            raise TypeError("AuthService requires an account directory")
        if issuer is None:
            raise TypeError("AuthService requires a token issuer")
        self.directory = directory
        self.issuer = issuer
        self.token_verifier = TokenVerifier(issuer.public_key(), issuer=issuer.issuer)
        self.lifecycle = lifecycle
        self.verifier = verifier or PasswordVerifier()
        self.otp_interval = otp_interval
        self.default_timeout = default_timeout
        self.clock = clock

    # -- transaction plumbing -------------------------------------------------

    async def _in_transaction(
        self, operation: str, body: Callable[[Any], Awaitable[T]]
    ) -> T:
        try:
            async with self.directory.transaction() as tx:
                return await body(tx)
        except ServiceError:
            raise
        except ConstraintViolation as exc:
            raise ConflictError(f"{operation}: {exc.message}", detail=exc.detail) from exc
        except StorageUnavailable as exc:
            logger.warning("auth_storage_unavailable", operation=operation, error=exc.message)
            raise TransientStorageError(f"{operation}: storage unavailable") from exc
        except asyncio.CancelledError:
            logger.info("auth_operation_cancelled", operation=operation)
            raise
        except Exception as exc:
            logger.exception(
                "auth_transaction_failed",
                operation=operation,
                error_type=type(exc).__name__,
            )
            raise ServerError(f"{operation} failed") from exc

    async def _run(
        self,
        operation: str,
        body: Callable[[Any], Awaitable[T]],
        timeout: Optional[float],
    ) -> T:
        if self.lifecycle.closing:
            raise TransientStorageError("service is shutting down")
        deadline = timeout if timeout is not None else self.default_timeout
        if deadline is None:
            return await self._in_transaction(operation, body)
        try:
            return await asyncio.wait_for(self._in_transaction(operation, body), deadline)
        except asyncio.TimeoutError:
            logger.warning("auth_deadline_exceeded", operation=operation, timeout=deadline)
            raise DeadlineExceededError(f"{operation}: deadline exceeded") from None

    def _lookup_required(self, username: str) -> Callable[[Any], Awaitable[Account]]:
        async def body(tx: Any) -> Account:
            account = await self.directory.lookup_by_username(tx, username)
            if account is None:
                raise NotFoundError("account not found")
            return account

        return body

    def _challenge(self, secret: bytes) -> str:
        return otp.issue_challenge(secret, self.clock(), interval=self.otp_interval)

    @staticmethod
    def _validate_username(username: str) -> str:
        if not isinstance(username, str) or not username.strip():
            raise ValidationError("username is required")
        try:
            username = normalize_username(username)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if len(username) > MAX_USERNAME_LENGTH:
            raise ValidationError("username too long")
        return username

    @staticmethod
    def _validate_password(password: str) -> str:
        if not isinstance(password, str) or not password:
            raise ValidationError("password is required")
        if len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError("password too long")
        return password

    # -- public operations ----------------------------------------------------

    async def create_profile(
        self, username: str, password: str, *, timeout: Optional[float] = None
    ) -> str:
        """Create the account if needed and return a fresh challenge.

        Calling this again for an existing username neither re-hashes nor
        re-inserts; it returns a new challenge for the stored secret, which
        makes an interrupted signup resumable.
        """
        username = self._validate_username(username)
        self._validate_password(password)

        async def body(tx: Any) -> bytes:
            account = await self.directory.lookup_by_username(tx, username)
            if account is not None:
                logger.info("profile_resumed", username=username, account_id=account.id)
                return account.secret
            account = await self.directory.insert(tx, username, self.verifier.hash(password))
            logger.info("profile_created", username=username, account_id=account.id)
            return account.secret

        try:
            secret = await self._run("create_profile", body, timeout)
        except ConflictError:
            # A concurrent request inserted the same username first
            logger.info("profile_create_conflict", username=username)
            account = await self._run(
                "create_profile", self._lookup_required(username), timeout
            )
            secret = account.secret
        return self._challenge(secret)

    async def get_challenge(self, username: str, *, timeout: Optional[float] = None) -> str:
        """Return a fresh challenge for an existing account."""
        username = self._validate_username(username)
        account = await self._run("get_challenge", self._lookup_required(username), timeout)
        return self._challenge(account.secret)

    async def sign_in(
        self,
        username: str,
        password: str,
        challenge: str,
        *,
        timeout: Optional[float] = None,
    ) -> TokenPair:
        """Verify password and challenge code, promote on first success, issue tokens.

        Unknown usernames and credential mismatches both raise
        ``InvalidCredentialsError`` with the same message.
        """
        username = self._validate_username(username)
        self._validate_password(password)
        if not isinstance(challenge, str):
            raise ValidationError("challenge is required")

        async def body(tx: Any) -> tuple[Account, TokenPair]:
            account = await self.directory.lookup_by_username(tx, username)
            if account is None:
                self.verifier.burn(password)
                raise NotFoundError("account not found")
            now = self.clock()
            prev, curr = otp.current_and_previous(
                account.secret, now, interval=self.otp_interval
            )
            if not self.verifier.verify(curr, prev, password, challenge, account.secret):
                raise InvalidCredentialsError(AUTH_FAILED_MESSAGE)

            if account.account_type == AccountType.UNAUTHORIZED:
                async with self.directory.transaction(tx) as nested:
                    updated = await self.directory.update_account_type(
                        nested, username, AccountType.AUTHORIZED
                    )
                if updated is None:
                    raise NotFoundError("account not found")
                account = updated
                logger.info("account_promoted", username=username, account_type=account.account_type.value)

            role = Role(
                name=username,
                global_=True,
                abilities=abilities_for(account.account_type, username),
            )
            return account, self.issuer.issue(username, role, now=now)

        try:
            account, tokens = await self._run("sign_in", body, timeout)
        except NotFoundError as exc:
            logger.info("sign_in_failed", username=username, reason="account_not_found")
            raise InvalidCredentialsError(AUTH_FAILED_MESSAGE) from exc
        except InvalidCredentialsError:
            logger.info("sign_in_failed", username=username, reason="credentials_mismatch")
            raise
        logger.info(
            "sign_in_succeeded",
            username=username,
            account_type=account.account_type.value,
        )
        return tokens

    async def get_account_by_username(
        self, username: str, *, timeout: Optional[float] = None
    ) -> Account:
        """Return the full account record; ``NotFoundError`` if absent."""
        username = self._validate_username(username)
        return await self._run(
            "get_account_by_username", self._lookup_required(username), timeout
        )

    async def refresh(self, refresh_token: str, *, timeout: Optional[float] = None) -> TokenPair:
        """Exchange a valid refresh token for a new token pair.

        Abilities are re-resolved from the stored account type, so an
        administrative role change shows up on the next refresh.
        """
        username = self.token_verifier.parse_refresh(refresh_token)

        async def body(tx: Any) -> TokenPair:
            account = await self.directory.lookup_by_username(tx, username)
            if account is None or account.account_type == AccountType.UNAUTHORIZED:
                raise InvalidCredentialsError(AUTH_FAILED_MESSAGE)
            role = Role(
                name=username,
                global_=True,
                abilities=abilities_for(account.account_type, username),
            )
            return self.issuer.issue(username, role, now=self.clock())

        tokens = await self._run("refresh", body, timeout)
        logger.info("tokens_refreshed", username=username)
        return tokens


__all__ = ["AccountDirectory", "AuthService", "AUTH_FAILED_MESSAGE"]
