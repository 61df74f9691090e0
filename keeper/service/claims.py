"""Claims and compact EdDSA tokens.

Access tokens carry the full claims set; refresh tokens carry only ``sub`` and
``exp``. Both are JWS compact serializations signed with Ed25519 so a gateway
holding only the public key can verify them.
"""
from __future__ import annotations

import base64
import binascii
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from keeper.logging import get_logger
from keeper.service.abilities import Abilities, Ability
from keeper.service.errors import InvalidTokenError, SigningError

logger = get_logger(__name__)

_HEADER = {"alg": "EdDSA", "typ": "JWT"}


@dataclass
class Role:
    name: str
    global_: bool = True
    abilities: Abilities = field(default_factory=dict)


@dataclass
class Claims:
    issuer: str
    subject: str
    issued_at: int
    expires_at: int
    role: Role

    @classmethod
    def new(
        cls,
        duration: timedelta,
        role: Role,
        *,
        issuer: str,
        subject: str,
        now: Optional[float] = None,
    ) -> "Claims":
        iat = int(time.time() if now is None else now)
        return cls(
            issuer=issuer,
            subject=subject,
            issued_at=iat,
            expires_at=iat + int(duration.total_seconds()),
            role=role,
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "exp": self.expires_at,
            "iat": self.issued_at,
            "iss": self.issuer,
            "sub": self.subject,
            "name": self.role.name,
            "global": self.role.global_,
        }
        if self.role.abilities:
            payload["abilities"] = self.role.abilities
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Claims":
        abilities = payload.get("abilities") or {}
        if not isinstance(abilities, dict):
            raise InvalidTokenError("invalid token")
        return cls(
            issuer=str(payload.get("iss", "")),
            subject=str(payload.get("sub", "")),
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
            role=Role(
                name=str(payload.get("name", "")),
                global_=bool(payload.get("global", False)),
                abilities={str(k): [str(s) for s in v] for k, v in abilities.items()},
            ),
        )

    def includes(self, *abilities: Ability) -> bool:
        """True when every ability's scope is granted under its name."""
        for ability in abilities:
            if ability.scope not in set(self.role.abilities.get(ability.name, [])):
                return False
        return True


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "bearer"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def load_private_key(key_hex: str) -> Ed25519PrivateKey:
    """Load an Ed25519 key from hex: a 32-byte seed or 64-byte seed||public."""
    try:
        raw = bytes.fromhex(key_hex.strip())
    except ValueError as exc:
        raise SigningError("signing key is not valid hex") from exc
    if len(raw) not in (32, 64):
        raise SigningError(f"ed25519: bad private key length: {len(raw)}")
    key = Ed25519PrivateKey.from_private_bytes(raw[:32])
    if len(raw) == 64 and public_key_bytes(key.public_key()) != raw[32:]:
        raise SigningError("ed25519: public half does not match seed")
    return key


def public_key_bytes(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
    )


def _sign(key: Ed25519PrivateKey, payload: dict[str, Any]) -> str:
    header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    try:
        signature = key.sign(signing_input.encode())
    except Exception as exc:
        logger.error("token_sign_failed", error_type=type(exc).__name__)
        raise SigningError("token signing failed") from exc
    return f"{signing_input}.{_encode_segment(signature)}"


class TokenIssuer:
    """Signs access and refresh tokens with one Ed25519 private key."""

    def __init__(
        self,
        private_key: Ed25519PrivateKey,
        *,
        issuer: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
    ) -> None:
        self._private_key = private_key
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def public_key(self) -> Ed25519PublicKey:
        return self._private_key.public_key()

    def issue(
        self, username: str, role: Role, *, now: Optional[float] = None
    ) -> TokenPair:
        issued = time.time() if now is None else now
        claims = Claims.new(
            self.access_ttl, role, issuer=self.issuer, subject=username, now=issued
        )
        access_token = _sign(self._private_key, claims.to_payload())
        refresh_token = _sign(
            self._private_key,
            {
                "sub": username,
                "exp": int(issued + self.refresh_ttl.total_seconds()),
            },
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=datetime.fromtimestamp(claims.expires_at, tz=timezone.utc),
        )


class TokenVerifier:
    """Gateway-side counterpart of ``TokenIssuer``; needs only the public key."""

    def __init__(
        self,
        public_key: Ed25519PublicKey,
        *,
        issuer: Optional[str] = None,
        leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        self._public_key = public_key
        self._issuer = issuer
        self._leeway = leeway

    def _verified_payload(self, token: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("invalid token") from None
        try:
            header = json.loads(_decode_segment(header_b64))
            signature = _decode_segment(sig_b64)
        except (binascii.Error, ValueError):
            raise InvalidTokenError("invalid token") from None
        # Reject anything but EdDSA to rule out algorithm confusion
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "EdDSA":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidTokenError("invalid token")
        try:
            self._public_key.verify(signature, f"{header_b64}.{payload_b64}".encode())
        except InvalidSignature:
            raise InvalidTokenError("invalid token") from None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError):
            raise InvalidTokenError("invalid token") from None
        if not isinstance(payload, dict):
            raise InvalidTokenError("invalid token")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("invalid token") from None
        if exp_ts <= time.time() - self._leeway.total_seconds():
            raise InvalidTokenError("token expired")
        return payload

    def parse(self, token: str) -> Claims:
        """Verify an access token and return its claims."""
        payload = self._verified_payload(token)
        if "iss" not in payload or "name" not in payload:
            raise InvalidTokenError("invalid token")
        if self._issuer is not None and payload["iss"] != self._issuer:
            logger.warning("jwt_issuer_mismatch", iss=payload["iss"])
            raise InvalidTokenError("invalid token")
        try:
            return Claims.from_payload(payload)
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("invalid token") from None

    def parse_refresh(self, token: str) -> str:
        """Verify a refresh token and return its subject."""
        payload = self._verified_payload(token)
        subject = payload.get("sub")
        # An access token must not double as a refresh token
        if set(payload) != {"sub", "exp"} or not isinstance(subject, str) or not subject:
            raise InvalidTokenError("invalid token")
        return subject


__all__ = [
    "Role",
    "Claims",
    "TokenPair",
    "TokenIssuer",
    "TokenVerifier",
    "load_private_key",
    "public_key_bytes",
]
