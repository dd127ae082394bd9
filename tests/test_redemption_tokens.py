from __future__ import annotations

import pytest

from atlalli_api.services.redemption import (
    RedemptionPayload,
    SignedToken,
    TokenSigner,
    TokenVerifier,
    UnknownVenueError,
    VerificationFailure,
    canonical_payload_bytes,
)
from atlalli_api.services.secrets.venues import VenueKeyStore


def _flip(value: str, index: int, bit: int) -> str:
    return value[:index] + chr(ord(value[index]) ^ (1 << bit)) + value[index + 1 :]


@pytest.mark.asyncio
async def test_signed_token_verifies_with_venue_secret(key_store, clock) -> None:
    signer = TokenSigner(key_store, clock=clock)
    verifier = TokenVerifier(key_store)

    token = await signer.sign("p1", "v1", "member-hash-1")

    assert token.payload.issued_at == clock.now
    assert token.payload.venue_id == "v1"
    result = await verifier.verify(token)
    assert result.valid
    assert result.failure is None


@pytest.mark.asyncio
async def test_every_signature_uses_a_fresh_nonce(key_store, clock) -> None:
    signer = TokenSigner(key_store, clock=clock)

    tokens = [await signer.sign("p1", "v1", "member-hash-1") for _ in range(20)]

    assert len({token.payload.nonce for token in tokens}) == 20
    assert len({token.signature for token in tokens}) == 20


@pytest.mark.asyncio
async def test_sign_rejects_unknown_venue(key_store) -> None:
    signer = TokenSigner(key_store)

    with pytest.raises(UnknownVenueError) as exc_info:
        await signer.sign("p1", "v-missing", "member-hash-1")

    assert exc_info.value.venue_id == "v-missing"


@pytest.mark.asyncio
async def test_verify_reports_unknown_venue(key_store, clock) -> None:
    other_store = VenueKeyStore.from_mapping({"v9": "other-secret"})
    token = await TokenSigner(other_store, clock=clock).sign("p1", "v9", "member-hash-1")

    result = await TokenVerifier(key_store).verify(token)

    assert not result.valid
    assert result.failure is VerificationFailure.UNKNOWN_VENUE


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["promotion_id", "subject_id", "nonce"])
async def test_any_single_bit_flip_in_text_fields_breaks_signature(key_store, clock, field) -> None:
    token = await TokenSigner(key_store, clock=clock).sign("p1", "v1", "member@example.com")
    verifier = TokenVerifier(key_store)
    original = getattr(token.payload, field)

    for index in range(len(original)):
        for bit in range(7):
            tampered = token.model_copy(
                update={"payload": token.payload.model_copy(update={field: _flip(original, index, bit)})}
            )
            result = await verifier.verify(tampered)
            assert result.failure is VerificationFailure.BAD_SIGNATURE, (field, index, bit)


@pytest.mark.asyncio
async def test_bit_flip_in_timestamp_breaks_signature(key_store, clock) -> None:
    token = await TokenSigner(key_store, clock=clock).sign("p1", "v1", "member-hash-1")
    verifier = TokenVerifier(key_store)

    for bit in range(31):
        payload = token.payload.model_copy(update={"issued_at": token.payload.issued_at ^ (1 << bit)})
        result = await verifier.verify(token.model_copy(update={"payload": payload}))
        assert result.failure is VerificationFailure.BAD_SIGNATURE, bit


@pytest.mark.asyncio
async def test_any_single_bit_flip_in_signature_is_rejected(key_store, clock) -> None:
    token = await TokenSigner(key_store, clock=clock).sign("p1", "v1", "member-hash-1")
    verifier = TokenVerifier(key_store)

    for index in range(len(token.signature)):
        for bit in range(8):
            tampered = token.model_copy(update={"signature": _flip(token.signature, index, bit)})
            result = await verifier.verify(tampered)
            assert result.failure is VerificationFailure.BAD_SIGNATURE, (index, bit)


@pytest.mark.asyncio
async def test_token_from_one_venue_does_not_verify_at_another(key_store, clock) -> None:
    token = await TokenSigner(key_store, clock=clock).sign("p1", "v1", "member-hash-1")
    moved = token.model_copy(update={"payload": token.payload.model_copy(update={"venue_id": "v2"})})

    result = await TokenVerifier(key_store).verify(moved)

    assert result.failure is VerificationFailure.BAD_SIGNATURE


@pytest.mark.asyncio
async def test_rotated_venue_secret_invalidates_old_tokens(clock) -> None:
    old_store = VenueKeyStore.from_mapping({"v1": "old-secret"})
    new_store = VenueKeyStore.from_mapping({"v1": "new-secret"})
    token = await TokenSigner(old_store, clock=clock).sign("p1", "v1", "member-hash-1")

    result = await TokenVerifier(new_store).verify(token)

    assert result.failure is VerificationFailure.BAD_SIGNATURE


def test_canonical_bytes_use_sorted_wire_keys() -> None:
    payload = RedemptionPayload(
        promotion_id="p1",
        venue_id="v1",
        subject_id="m1",
        issued_at=1700000000,
        nonce="abc",
    )

    assert canonical_payload_bytes(payload) == (
        b'{"nonce":"abc","p_id":"p1","s_id":"v1","ts":1700000000,"u_id":"m1"}'
    )


def test_payload_accepts_wire_aliases() -> None:
    token = SignedToken.model_validate(
        {
            "payload": {"p_id": "p1", "s_id": "v1", "u_id": "m1", "ts": 5, "nonce": "n"},
            "sig": "abc",
        }
    )

    assert token.payload.promotion_id == "p1"
    assert token.signature == "abc"
