"""Tests for the mint API client and the confirmation outbox."""

import asyncio
import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from mint_client import (
    MintClient, RejectedRequestError, ReservationMissingError,
    TransientConfirmError, encode_signature
)
from ledger import ReservationLedger
from ledger.confirmation import ConfirmationManager
from mint_client.outbox import ConfirmationOutbox, PendingConfirmation
from conftest import COLLECTION_ADDRESS, WALLET, public_phase

FALLBACK = {'collection_address': COLLECTION_ADDRESS, 'wallet': WALLET, 'quantity': 1, 'phase_name': 'Public'}

def response(status_code=200, body=None, reason="OK"):
    mock = MagicMock()
    mock.status_code = status_code
    mock.reason = reason
    mock.json.return_value = body if body is not None else {}
    return mock

@pytest.fixture
def session():
    return MagicMock()

@pytest.fixture
def client(session):
    return MintClient(base_url="http://mint.test/", session=session)

def test_post_drops_empty_fields(client, session):
    session.post.return_value = response(body={'ok': True})

    assert client.check(WALLET, COLLECTION_ADDRESS) == {'ok': True}

    url = session.post.call_args.args[0]
    payload = session.post.call_args.kwargs['json']
    assert url == "http://mint.test/mint"
    assert payload == {'action': 'check', 'wallet': WALLET, 'collectionAddress': COLLECTION_ADDRESS, 'quantity': 1}

def test_byte_signatures_sent_as_lists(client, session):
    session.post.return_value = response(body={'ok': True})
    client.confirm("res-1", b"\x01\x02")
    assert session.post.call_args.kwargs['json']['signature'] == [1, 2]
    assert encode_signature("abc") == "abc"

@pytest.mark.parametrize("failure,expected", [
    (response(503, {'detail': 'down'}), TransientConfirmError),
    (response(404, {'detail': 'Reservation not found'}), ReservationMissingError),
    (response(409, {'detail': 'Reservation already failed'}), RejectedRequestError),
    (response(400, {'detail': 'Missing signature'}), RejectedRequestError),
    (requests.exceptions.ConnectTimeout(), TransientConfirmError),
    (requests.exceptions.ConnectionError(), TransientConfirmError)
])
def test_failures_are_classified(client, session, failure, expected):
    if isinstance(failure, Exception):
        session.post.side_effect = failure
    else:
        session.post.return_value = failure
    with pytest.raises(expected) as excinfo:
        client.confirm("res-1", "sig")
    assert excinfo.value.action == 'confirm'

def test_error_message_carries_detail(client, session):
    session.post.return_value = response(409, {'detail': 'Reservation already failed'})
    with pytest.raises(RejectedRequestError, match="Reservation already failed") as excinfo:
        client.confirm("res-1", "sig")
    assert excinfo.value.status_code == 409

@pytest.fixture
def mint_api():
    return MagicMock(spec=MintClient)

@pytest.fixture
def outbox(tmp_path, mint_api):
    return ConfirmationOutbox(client=mint_api, path=str(tmp_path / 'outbox.json'), max_delay=60, poll_interval=1)

@pytest.mark.asyncio
async def test_submit_confirms_directly_when_reachable(outbox, mint_api):
    mint_api.confirm.return_value = {'ok': True}
    assert await outbox.submit("res-1", "sig-1", "nft-1", FALLBACK)
    mint_api.confirm.assert_called_once_with("res-1", "sig-1", "nft-1")
    assert await outbox.pending() == []

@pytest.mark.asyncio
async def test_submit_falls_back_to_direct_confirmation(outbox, mint_api):
    mint_api.confirm.side_effect = ReservationMissingError("gone", 404, 'confirm')
    mint_api.confirm_direct.return_value = {'ok': True}

    assert await outbox.submit("res-1", "sig-1", "nft-1", FALLBACK)

    mint_api.confirm_direct.assert_called_once_with(signature="sig-1", nft_address="nft-1", **FALLBACK)
    assert await outbox.pending() == []

@pytest.mark.asyncio
async def test_submit_queues_when_server_unreachable(outbox, mint_api):
    mint_api.confirm.side_effect = TransientConfirmError("down", 503, 'confirm')
    mint_api.confirm_direct.side_effect = TransientConfirmError("down", 503, 'confirm_direct')

    with patch('asyncio.sleep'):
        assert not await outbox.submit("res-1", b"\x05\x06", None, FALLBACK)

    assert mint_api.confirm.call_count == 3
    pending = await outbox.pending()
    assert len(pending) == 1
    assert pending[0].reservation_id == "res-1"
    assert pending[0].signature == [5, 6]
    assert pending[0].fallback == FALLBACK

    with open(outbox.path) as f:
        assert json.load(f)['pending'][0]['reservation_id'] == "res-1"

@pytest.mark.asyncio
async def test_submit_without_fallback_schedules_retry(outbox, mint_api):
    mint_api.confirm.side_effect = RejectedRequestError("bad", 400, 'confirm')

    assert not await outbox.submit("res-1", "sig-1")

    pending = await outbox.pending()
    assert pending[0].attempts == 1
    assert pending[0].next_attempt_at > 0
    mint_api.confirm_direct.assert_not_called()

@pytest.mark.asyncio
async def test_drain_delivers_and_backs_off(outbox, mint_api):
    await outbox.enqueue(PendingConfirmation(signature="sig-1", reservation_id="res-1"))
    await outbox.enqueue(PendingConfirmation(signature="sig-2", reservation_id="res-2"))

    def confirm(reservation_id, signature, nft_address):
        if reservation_id == "res-2":
            raise TransientConfirmError("down", 502, 'confirm')
        return {'ok': True}
    mint_api.confirm.side_effect = confirm

    stats = await outbox.drain(now=1000.0)
    assert stats == {'delivered': 1, 'retried': 1, 'dead': 0}

    pending = await outbox.pending()
    assert [entry.reservation_id for entry in pending] == ["res-2"]
    assert pending[0].attempts == 1
    assert pending[0].next_attempt_at == 1001.0

    # Not due yet
    assert await outbox.drain(now=1000.5) == {'delivered': 0, 'retried': 0, 'dead': 0}

    await outbox.drain(now=1001.0)
    assert (await outbox.pending())[0].next_attempt_at == 1003.0

def test_retry_delay_is_capped(outbox):
    assert outbox._delay(1) == 1
    assert outbox._delay(4) == 8
    assert outbox._delay(20) == 60

@pytest.mark.asyncio
async def test_drain_moves_rejected_entries_to_dead_letters(outbox, mint_api):
    await outbox.enqueue(PendingConfirmation(signature="sig-1", reservation_id="res-1"))
    await outbox.enqueue(PendingConfirmation(signature="sig-2", reservation_id="res-2", fallback=FALLBACK))
    mint_api.confirm.side_effect = RejectedRequestError("Reservation already failed", 409, 'confirm')
    mint_api.confirm_direct.return_value = {'ok': True}

    stats = await outbox.drain(now=0)

    assert stats == {'delivered': 1, 'retried': 0, 'dead': 1}
    assert await outbox.pending() == []
    dead = await outbox.dead_letters()
    assert dead[0]['reservation_id'] == "res-1"
    assert dead[0]['last_error'] == "[409] confirm: Reservation already failed"

@pytest.mark.asyncio
async def test_corrupt_outbox_is_moved_aside(outbox, tmp_path):
    with open(outbox.path, 'w') as f:
        f.write("{not json")
    assert await outbox.pending() == []
    assert any(path.name.startswith('outbox.json.corrupt-') for path in tmp_path.iterdir())

class LedgerBackedClient:
    """Sync client whose calls land on a ConfirmationManager running on the test loop."""

    def __init__(self, confirmer, loop, confirm_outages=0):
        self.confirmer = confirmer
        self.loop = loop
        self.confirm_outages = confirm_outages
        self.direct_calls = 0

    def _run(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result()

    def confirm(self, reservation_id, signature, nft_address=None):
        if self.confirm_outages:
            self.confirm_outages -= 1
            raise TransientConfirmError("Bad Gateway", 502, 'confirm')
        return self._run(self.confirmer.confirm(reservation_id, signature, nft_address)).to_dict()

    def confirm_direct(self, collection_address, wallet, signature, quantity=1, price=None,
                       network='mainnet-beta', nft_address=None, phase_name=None):
        self.direct_calls += 1
        return self._run(self.confirmer.confirm_direct(
            collection_address, wallet, quantity, price, network, signature, nft_address, phase_name
        )).to_dict()

async def reserve_one(repository):
    collection = repository.add_collection(phases=[public_phase()])
    reservation = await ReservationLedger(repository, strict=False).reserve(WALLET, COLLECTION_ADDRESS, 1)
    return collection, reservation

@pytest.mark.asyncio
async def test_direct_fallback_releases_the_pending_reservation(repository, tmp_path):
    collection, reservation = await reserve_one(repository)
    client = LedgerBackedClient(ConfirmationManager(repository), asyncio.get_running_loop(), confirm_outages=3)
    outbox = ConfirmationOutbox(client=client, path=str(tmp_path / 'outbox.json'))

    with patch('asyncio.sleep'):
        assert await outbox.submit(str(reservation.reservation_id), "sig-1", "nft-1", dict(FALLBACK, price=0))

    assert client.direct_calls == 1
    assert await outbox.pending() == []
    assert repository.reservation(reservation.reservation_id)['status'] == 'failed'
    counters = repository.collection(collection['id'])
    assert counters['items_reserved'] == 0
    assert counters['items_minted'] == 1

@pytest.mark.asyncio
async def test_reservation_release_is_retried_by_drain(repository, tmp_path):
    collection, reservation = await reserve_one(repository)
    client = LedgerBackedClient(ConfirmationManager(repository), asyncio.get_running_loop(), confirm_outages=4)
    outbox = ConfirmationOutbox(client=client, path=str(tmp_path / 'outbox.json'))

    with patch('asyncio.sleep'):
        assert await outbox.submit(str(reservation.reservation_id), "sig-1", None, dict(FALLBACK, price=0))

    pending = await outbox.pending()
    assert len(pending) == 1
    assert pending[0].direct_confirmed
    assert repository.reservation(reservation.reservation_id)['status'] == 'pending'

    stats = await outbox.drain(now=pending[0].next_attempt_at)

    assert stats == {'delivered': 1, 'retried': 0, 'dead': 0}
    assert client.direct_calls == 1
    assert await outbox.pending() == []
    assert repository.reservation(reservation.reservation_id)['status'] == 'failed'
    assert repository.collection(collection['id'])['items_reserved'] == 0
    assert repository.collection(collection['id'])['items_minted'] == 1
