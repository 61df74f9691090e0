"""Time-windowed one-time codes and the challenge strings built from them.

Codes follow the HOTP truncation of RFC 4226 over a coarse window counter:
the same secret yields the same code for a whole window, so the random
challenge prefix is what makes every issued challenge unique.
"""
from __future__ import annotations

import hashlib
import hmac
import time
import uuid
from typing import Optional, Tuple

OTP_INTERVAL_SECONDS = 600
OTP_DIGITS = 6
CHALLENGE_PREFIX_LENGTH = len(str(uuid.UUID(int=0)))
CHALLENGE_LENGTH = CHALLENGE_PREFIX_LENGTH + OTP_DIGITS


def window_for(timestamp: float, interval: int = OTP_INTERVAL_SECONDS) -> int:
    """Return the window counter that contains ``timestamp``."""
    return int(timestamp // interval)


def derive(secret: bytes, window: int) -> str:
    """Derive the 6-digit code for ``window`` keyed by ``secret``."""
    if window < 0:
        raise ValueError("window counter must be non-negative")
    digest = hmac.new(secret, window.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**OTP_DIGITS
    )
    return str(code_int).zfill(OTP_DIGITS)


def current_and_previous(
    secret: bytes,
    now: Optional[float] = None,
    *,
    interval: int = OTP_INTERVAL_SECONDS,
) -> Tuple[str, str]:
    """Return ``(prev, curr)`` codes for windows N-1 and N.

    Accepting the previous window gives one window of tolerance for clock skew
    and for challenges issued just before a window boundary.
    """
    counter = window_for(time.time() if now is None else now, interval)
    return derive(secret, counter - 1), derive(secret, counter)


def issue_challenge(
    secret: bytes,
    now: Optional[float] = None,
    *,
    interval: int = OTP_INTERVAL_SECONDS,
) -> str:
    """Build a fresh challenge: random UUID text followed by the current code."""
    _, curr = current_and_previous(secret, now, interval=interval)
    return f"{uuid.uuid4()}{curr}"


def split_challenge(challenge: str) -> Tuple[str, str]:
    """Split a challenge into ``(prefix, code)``.

    Raises:
        ValueError: if the string is not a well-formed challenge.
    """
    if not isinstance(challenge, str) or len(challenge) != CHALLENGE_LENGTH:
        raise ValueError("malformed challenge")
    prefix, code = challenge[:CHALLENGE_PREFIX_LENGTH], challenge[CHALLENGE_PREFIX_LENGTH:]
    if not (code.isascii() and code.isdigit()):
        raise ValueError("malformed challenge")
    return prefix, code


__all__ = [
    "OTP_INTERVAL_SECONDS",
    "OTP_DIGITS",
    "CHALLENGE_PREFIX_LENGTH",
    "CHALLENGE_LENGTH",
    "window_for",
    "derive",
    "current_and_previous",
    "issue_challenge",
    "split_challenge",
]
