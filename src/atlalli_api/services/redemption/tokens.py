"""Redemption payloads, HMAC signing and verification."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr

from atlalli_api.services.redemption.errors import UnknownVenueError
from atlalli_api.services.secrets.venues import VenueKeyStore

Clock = Callable[[], int]

NONCE_BYTES = 12


def unix_now() -> int:
    return int(time.time())


def generate_nonce() -> str:
    return secrets.token_urlsafe(NONCE_BYTES)


class RedemptionPayload(BaseModel):
    """The claim a member or guest presents: promotion, venue, subject, time, nonce."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    promotion_id: StrictStr = Field(..., alias="p_id", min_length=1)
    venue_id: StrictStr = Field(..., alias="s_id", min_length=1)
    subject_id: StrictStr = Field(..., alias="u_id", min_length=1)
    issued_at: StrictInt = Field(..., alias="ts", ge=0)
    nonce: StrictStr = Field(..., min_length=1)


class SignedToken(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    payload: RedemptionPayload
    signature: StrictStr = Field(..., alias="sig", min_length=1)


def canonical_payload_bytes(payload: RedemptionPayload) -> bytes:
    """Serialize the payload deterministically (sorted wire keys, no whitespace)."""

    document = payload.model_dump(by_alias=True)
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8", "surrogatepass")


def compute_signature(payload: RedemptionPayload, secret: bytes) -> str:
    digest = hmac.new(secret, canonical_payload_bytes(payload), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class VerificationFailure(str, Enum):
    UNKNOWN_VENUE = "unknown_venue"
    BAD_SIGNATURE = "bad_signature"


@dataclass(frozen=True)
class VerificationResult:
    failure: VerificationFailure | None = None

    @property
    def valid(self) -> bool:
        return self.failure is None

    @classmethod
    def ok(cls) -> "VerificationResult":
        return cls()

    @classmethod
    def invalid(cls, failure: VerificationFailure) -> "VerificationResult":
        return cls(failure=failure)


class TokenSigner:
    """Issues signed redemption tokens using the venue's own secret."""

    def __init__(
        self,
        key_store: VenueKeyStore,
        *,
        clock: Clock | None = None,
        nonce_factory: Callable[[], str] | None = None,
    ) -> None:
        self._key_store = key_store
        self._clock = clock or unix_now
        self._nonce_factory = nonce_factory or generate_nonce

    async def sign(self, promotion_id: str, venue_id: str, subject_id: str) -> SignedToken:
        """Return a freshly signed token; every call yields a different nonce."""

        secret = await self._key_store.get(venue_id)
        if secret is None:
            logger.warning("Refusing to sign for unknown venue", venue_id=venue_id)
            raise UnknownVenueError(venue_id)

        payload = RedemptionPayload(
            promotion_id=promotion_id,
            venue_id=venue_id,
            subject_id=subject_id,
            issued_at=self._clock(),
            nonce=self._nonce_factory(),
        )
        return SignedToken(payload=payload, signature=compute_signature(payload, secret))


class TokenVerifier:
    """Checks a token's signature against the secret of the venue it names.

    Staleness is deliberately not judged here; callers apply their own window.
    """

    def __init__(self, key_store: VenueKeyStore) -> None:
        self._key_store = key_store

    async def verify(self, token: SignedToken) -> VerificationResult:
        secret = await self._key_store.get(token.payload.venue_id)
        if secret is None:
            return VerificationResult.invalid(VerificationFailure.UNKNOWN_VENUE)

        expected = compute_signature(token.payload, secret).encode("ascii")
        if not hmac.compare_digest(expected, token.signature.encode("utf-8", "surrogatepass")):
            return VerificationResult.invalid(VerificationFailure.BAD_SIGNATURE)
        return VerificationResult.ok()


__all__ = [
    "Clock",
    "RedemptionPayload",
    "SignedToken",
    "TokenSigner",
    "TokenVerifier",
    "VerificationFailure",
    "VerificationResult",
    "canonical_payload_bytes",
    "compute_signature",
    "generate_nonce",
    "unix_now",
]
