"""Authorizations over fee-bound payload bytes.

A submission always carries exactly two authorizations over the same bytes,
ordered user first, sponsor second. The order is part of the ledger's
verification rules, so it is fixed here as ``SUBMISSION_ORDER`` and enforced
by ``AuthorizationPair`` instead of being left to positional lists.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, Tuple

from nacl import signing
from nacl.exceptions import BadSignatureError

from .exceptions import AuthorizationMismatch
from .payload import compute_digest

logger = logging.getLogger(__name__)

ED25519_FLAG = 0x00
# intent scope (transaction data), version, app id
TRANSACTION_INTENT = bytes([0, 0, 0])
SIGNATURE_LENGTH = 64
PUBLIC_KEY_LENGTH = 32


class SignerRole(str, Enum):
    """Role a signer plays for one operation."""
    USER = "user"
    SPONSOR = "sponsor"


SUBMISSION_ORDER: Tuple[SignerRole, SignerRole] = (SignerRole.USER, SignerRole.SPONSOR)


@dataclass(frozen=True)
class Authorization:
    """Signature over the exact serialized bytes of a fee-bound payload."""
    role: SignerRole
    signature: str
    payload_digest: str

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "role", SignerRole(self.role))
        except (TypeError, ValueError):
            raise AuthorizationMismatch(f"unknown signer role {self.role!r}") from None

    @classmethod
    def for_payload(
        cls,
        role: SignerRole,
        signature: str,
        payload_bytes: bytes,
    ) -> "Authorization":
        """Wrap an opaque signature produced over ``payload_bytes``."""
        return cls(role=SignerRole(role), signature=signature, payload_digest=compute_digest(payload_bytes))

    def covers(self, payload_bytes: bytes) -> bool:
        return self.payload_digest == compute_digest(payload_bytes)


@dataclass(frozen=True)
class AuthorizationPair:
    """Ordered (user, sponsor) authorizations for one submission."""
    user: Authorization
    sponsor: Authorization

    def as_submission_list(self) -> list[str]:
        return [self.user.signature, self.sponsor.signature]

    def roles(self) -> Tuple[SignerRole, SignerRole]:
        return (self.user.role, self.sponsor.role)


class UserSigner(Protocol):
    """Wallet-side signer. May block on out-of-band user interaction."""

    async def authorize(self, payload_bytes: bytes) -> Authorization:
        ...


# =============================================================================
# Ed25519 scheme
# =============================================================================

def signing_digest(payload_bytes: bytes) -> bytes:
    """Message digest a signer actually signs for ``payload_bytes``."""
    return hashlib.blake2b(TRANSACTION_INTENT + payload_bytes, digest_size=32).digest()


def address_from_public_key(public_key: bytes) -> str:
    """Ledger address derived from an Ed25519 public key."""
    return "0x" + hashlib.blake2b(bytes([ED25519_FLAG]) + public_key, digest_size=32).hexdigest()


def verify_serialized_signature(serialized: str, payload_bytes: bytes) -> Optional[str]:
    """
    Verify a serialized Ed25519 signature against ``payload_bytes``.

    Returns:
        The signer's address when the signature is valid, otherwise None.
    """
    try:
        blob = base64.b64decode(serialized, validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(blob) != 1 + SIGNATURE_LENGTH + PUBLIC_KEY_LENGTH or blob[0] != ED25519_FLAG:
        return None
    signature = blob[1:1 + SIGNATURE_LENGTH]
    public_key = blob[1 + SIGNATURE_LENGTH:]
    try:
        signing.VerifyKey(public_key).verify(signing_digest(payload_bytes), signature)
    except (BadSignatureError, ValueError):
        return None
    return address_from_public_key(public_key)


class Ed25519Signer:
    """Local Ed25519 keypair signer.

    Serves as the sponsor key in the simulated gas station and as a
    reference ``UserSigner`` for tests and scripts.
    """

    def __init__(
        self,
        role: SignerRole = SignerRole.USER,
        signing_key: Optional[signing.SigningKey] = None,
    ) -> None:
        self.role = SignerRole(role)
        self._key = signing_key or signing.SigningKey.generate()

    @classmethod
    def from_seed(cls, seed: bytes, role: SignerRole = SignerRole.USER) -> "Ed25519Signer":
        return cls(role=role, signing_key=signing.SigningKey(seed))

    @property
    def public_key(self) -> bytes:
        return bytes(self._key.verify_key)

    @property
    def address(self) -> str:
        return address_from_public_key(self.public_key)

    def sign_bytes(self, payload_bytes: bytes) -> str:
        signed = self._key.sign(signing_digest(payload_bytes))
        blob = bytes([ED25519_FLAG]) + signed.signature + self.public_key
        return base64.b64encode(blob).decode("ascii")

    async def authorize(self, payload_bytes: bytes) -> Authorization:
        signature = self.sign_bytes(payload_bytes)
        logger.debug("Signed payload as %s (%s)", self.role.value, self.address)
        return Authorization.for_payload(self.role, signature, payload_bytes)

    def __repr__(self) -> str:
        return f"Ed25519Signer(role={self.role.value}, address={self.address})"


def describe_authorization(auth: Authorization) -> dict[str, Any]:
    """Log-safe summary of an authorization."""
    return {
        "role": auth.role.value,
        "payload_digest": auth.payload_digest,
        "signature_prefix": auth.signature[:12],
    }
