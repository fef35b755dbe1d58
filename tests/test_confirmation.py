"""Tests for reservation confirmation and reconciliation."""

import base64
import uuid

import pytest

from catalog import CollectionNotFoundError
from ledger import InvalidMintRequestError, ReservationLedger, ReservationNotFoundError
from ledger.confirmation import ConfirmationManager, ReservationFailedError, normalize_signature
from conftest import COLLECTION_ADDRESS, WALLET, public_phase

@pytest.fixture
def confirmer(repository):
    return ConfirmationManager(repository)

async def reserve(repository, quantity=2):
    result = await ReservationLedger(repository, strict=False).reserve(WALLET, COLLECTION_ADDRESS, quantity)
    assert result.ok
    return result

def test_text_signature_kept_and_truncated():
    assert normalize_signature("  5abc  ") == "5abc"
    assert normalize_signature("x" * 300) == "x" * 200
    assert normalize_signature("x" * 300, max_length=88) == "x" * 88

def test_byte_signatures_are_base64_encoded():
    raw = bytes(range(64))
    expected = base64.b64encode(raw).decode('ascii')
    assert normalize_signature(raw) == expected
    assert normalize_signature(list(raw)) == expected

def test_long_byte_signature_truncated_after_encoding():
    raw = bytes(200)
    assert len(normalize_signature(raw)) == 200

@pytest.mark.parametrize("value", ["", "   ", [256], None])
def test_invalid_signatures_rejected(value):
    with pytest.raises(InvalidMintRequestError):
        normalize_signature(value)

@pytest.mark.asyncio
async def test_confirm_releases_reserved_and_recomputes_minted(repository, confirmer):
    collection = repository.add_collection(phases=[public_phase()])
    reservation = await reserve(repository, 2)

    result = await confirmer.confirm(reservation.reservation_id, "sig-1", "nft-1")

    assert result.ok and result.applied
    row = repository.reservation(reservation.reservation_id)
    assert row['status'] == 'confirmed'
    assert row['transaction_signature'] == "sig-1"
    assert row['nft_address'] == "nft-1"
    counters = repository.collection(collection['id'])
    assert counters['items_reserved'] == 0
    assert counters['items_minted'] == 2

@pytest.mark.asyncio
async def test_confirm_is_idempotent(repository, confirmer):
    collection = repository.add_collection(phases=[public_phase()])
    reservation = await reserve(repository, 2)
    await reserve(repository, 1)

    await confirmer.confirm(reservation.reservation_id, "sig-1")
    again = await confirmer.confirm(str(reservation.reservation_id), "sig-1")

    assert again.ok
    assert not again.applied
    counters = repository.collection(collection['id'])
    assert counters['items_reserved'] == 1
    assert counters['items_minted'] == 2

@pytest.mark.asyncio
async def test_confirm_unknown_reservation(repository, confirmer):
    repository.add_collection(phases=[public_phase()])
    with pytest.raises(ReservationNotFoundError):
        await confirmer.confirm(uuid.uuid4(), "sig-1")

@pytest.mark.asyncio
async def test_confirm_malformed_id(confirmer):
    with pytest.raises(InvalidMintRequestError):
        await confirmer.confirm("not-a-uuid", "sig-1")

@pytest.mark.asyncio
async def test_confirm_after_fail_conflicts(repository, confirmer):
    repository.add_collection(phases=[public_phase()])
    reservation = await reserve(repository)
    await confirmer.fail(reservation.reservation_id)

    with pytest.raises(ReservationFailedError):
        await confirmer.confirm(reservation.reservation_id, "sig-1")

@pytest.mark.asyncio
async def test_fail_releases_inventory(repository, confirmer):
    collection = repository.add_collection(phases=[public_phase()])
    reservation = await reserve(repository, 3)

    result = await confirmer.fail(reservation.reservation_id)

    assert result.ok and result.applied
    assert repository.reservation(reservation.reservation_id)['status'] == 'failed'
    assert repository.collection(collection['id'])['items_reserved'] == 0

@pytest.mark.asyncio
async def test_fail_is_a_noop_on_settled_or_unknown_rows(repository, confirmer):
    collection = repository.add_collection(phases=[public_phase()])
    confirmed = await reserve(repository, 1)
    pending = await reserve(repository, 2)
    await confirmer.confirm(confirmed.reservation_id, "sig-1")

    for reservation_id in (confirmed.reservation_id, uuid.uuid4(), "garbage"):
        result = await confirmer.fail(reservation_id)
        assert result.ok
        assert not result.applied

    await confirmer.fail(pending.reservation_id)
    await confirmer.fail(pending.reservation_id)

    assert repository.reservation(confirmed.reservation_id)['status'] == 'confirmed'
    counters = repository.collection(collection['id'])
    assert counters['items_reserved'] == 0
    assert counters['items_minted'] == 1

@pytest.mark.asyncio
async def test_reserved_counter_never_negative(repository, confirmer):
    collection = repository.add_collection(phases=[public_phase()])
    reservation = await reserve(repository, 2)
    repository.collection(collection['id'])['items_reserved'] = 1

    await confirmer.fail(reservation.reservation_id)
    assert repository.collection(collection['id'])['items_reserved'] == 0

@pytest.mark.asyncio
async def test_confirm_direct_records_once(repository, confirmer):
    collection = repository.add_collection(phases=[public_phase()])

    first = await confirmer.confirm_direct(COLLECTION_ADDRESS, WALLET, 2, "0.5", None, "sig-1", "nft-1", "Public")
    second = await confirmer.confirm_direct(COLLECTION_ADDRESS, WALLET, 2, "0.5", None, "sig-1", "nft-1", "Public")

    assert first.applied
    assert second.ok and not second.applied
    rows = list(repository.transactions.values())
    assert len(rows) == 1
    assert rows[0]['status'] == 'confirmed'
    assert rows[0]['phase_name'] == "Public"
    assert rows[0]['network'] == 'mainnet-beta'
    assert repository.collection(collection['id'])['items_minted'] == 2

@pytest.mark.asyncio
async def test_confirm_direct_unknown_collection(confirmer):
    with pytest.raises(CollectionNotFoundError):
        await confirmer.confirm_direct("missing", WALLET, 1, 0, None, "sig-1")

@pytest.mark.asyncio
async def test_confirm_after_direct_confirmation_counts_once(repository, confirmer):
    collection = repository.add_collection(phases=[public_phase()])
    reservation = await reserve(repository, 1)

    await confirmer.confirm_direct(COLLECTION_ADDRESS, WALLET, 1, 0, None, "sig-1")
    result = await confirmer.confirm(reservation.reservation_id, "sig-1")

    assert result.ok
    assert not result.applied
    assert repository.reservation(reservation.reservation_id)['status'] == 'failed'
    counters = repository.collection(collection['id'])
    assert counters['items_minted'] == 1
    assert counters['items_reserved'] == 0
