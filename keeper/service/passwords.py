from __future__ import annotations

import hmac
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from keeper.logging import get_logger
from keeper.service.otp import split_challenge

logger = get_logger(__name__)


class PasswordVerifier:
    """Argon2id hashing plus the two-factor check used at sign-in."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._pwd_hasher.hash("keeper-timing-equalizer").encode()

    def hash(self, password: str) -> bytes:
        """Hash ``password``; the result is stored as the account secret."""
        return self._pwd_hasher.hash(password).encode("utf-8")

    def check_password(self, password: str, stored_secret: bytes) -> bool:
        try:
            return self._pwd_hasher.verify(stored_secret.decode("utf-8"), password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError, UnicodeDecodeError):
            logger.warning("password_hash_unusable")
            return False

    def verify(
        self,
        curr_code: str,
        prev_code: str,
        password: str,
        challenge: str,
        stored_secret: bytes,
    ) -> bool:
        """Check the echoed challenge code and the password.

        The code after the fixed-length prefix must equal the current or the
        previous window code. The password comparison runs even when the code
        is wrong, so response time does not reveal which factor failed.
        """
        try:
            _, code = split_challenge(challenge)
        except ValueError:
            code = ""
        code_ok = bool(code) and (
            hmac.compare_digest(code, curr_code) | hmac.compare_digest(code, prev_code)
        )
        password_ok = self.check_password(password, stored_secret)
        return code_ok and password_ok

    def burn(self, password: str) -> None:
        """Spend one hash comparison without a real account behind it."""
        self.check_password(password, self._dummy_hash)


__all__ = ["PasswordVerifier"]
