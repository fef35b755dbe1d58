"""Durable outbox for mint confirmations.

Once a mint has landed on chain, recording it must not depend on the mint
API being reachable at that moment. Confirmations that cannot be delivered
are written to a local JSON file and retried in the background until the
server accepts them, either as a confirm of the original reservation or as
a direct confirmation.

File layout::

    {"pending": [<entry>, ...], "dead": [<entry>, ...]}

Entries the server rejects for good move to ``dead`` so an operator can
inspect them. They are never silently dropped.
"""

import asyncio
import json
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiofiles
import aiofiles.os
import backoff

from config import settings_conf
from . import (
    MintClient, RejectedRequestError, ReservationMissingError,
    TransientConfirmError, encode_signature
)

logger = logging.getLogger(__name__)

OUTBOX_PATH = settings_conf['outbox_path']
OUTBOX_MAX_DELAY = settings_conf['outbox_max_delay']
OUTBOX_POLL_INTERVAL = settings_conf['outbox_poll_interval']

CONFIRM_TRIES = 3
BASE_DELAY = 1.0

@dataclass
class PendingConfirmation:
    """A confirmation waiting to be delivered."""
    signature: Any
    reservation_id: Optional[str] = None
    nft_address: Optional[str] = None
    # Keyword arguments for MintClient.confirm_direct, minus signature and nft_address
    fallback: Optional[Dict[str, Any]] = None
    # Recorded through confirm_direct; the reservation still has to be released
    direct_confirmed: bool = False
    attempts: int = 0
    next_attempt_at: float = 0.0
    created_at: float = field(default_factory=time.time)
    last_error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingConfirmation':
        known = {key: data[key] for key in cls.__dataclass_fields__ if key in data}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def can_fall_back(self) -> bool:
        return bool(self.fallback and self.fallback.get('collection_address') and self.fallback.get('wallet'))

class ConfirmationOutbox:
    """Delivers confirmations, persisting the ones that cannot be delivered yet."""

    def __init__(
        self,
        client: Optional[MintClient] = None,
        path: Optional[str] = None,
        max_delay: Optional[float] = None,
        poll_interval: Optional[float] = None,
        base_delay: float = BASE_DELAY
    ):
        """Initialize the outbox.

        Args:
            client: Mint API client. A default client is created if omitted.
            path: Outbox file. Defaults to the outbox_path setting.
            max_delay: Upper bound for the per-entry retry delay, in seconds
            poll_interval: Seconds between drains in ``run()``
            base_delay: First retry delay, doubled on every failed attempt
        """
        self.client = client or MintClient()
        self.path = path or OUTBOX_PATH
        self.max_delay = max_delay if max_delay is not None else OUTBOX_MAX_DELAY
        self.poll_interval = poll_interval if poll_interval is not None else OUTBOX_POLL_INTERVAL
        self.base_delay = base_delay
        self._lock = asyncio.Lock()
        self._stop_requested = False

    # Persistence

    async def load(self) -> Tuple[List[PendingConfirmation], List[Dict[str, Any]]]:
        """Read pending entries and dead letters from disk."""
        if not await aiofiles.os.path.exists(self.path):
            return [], []
        try:
            async with aiofiles.open(self.path, 'r') as f:
                data = json.loads(await f.read() or '{}')
        except ValueError as e:
            # Keep the unreadable file around rather than overwriting it
            corrupt = f"{self.path}.corrupt-{int(time.time())}"
            await aiofiles.os.replace(self.path, corrupt)
            logger.error(f"Outbox file {self.path} is unreadable, moved to {corrupt}: {e}")
            return [], []
        pending = [PendingConfirmation.from_dict(entry) for entry in data.get('pending', [])]
        return pending, list(data.get('dead', []))

    async def save(self, pending: List[PendingConfirmation], dead: List[Dict[str, Any]]):
        """Write the outbox atomically."""
        directory = os.path.dirname(self.path)
        if directory:
            await aiofiles.os.makedirs(directory, exist_ok=True)
        temp_path = f"{self.path}.tmp"
        async with aiofiles.open(temp_path, 'w') as f:
            await f.write(json.dumps({
                'pending': [entry.to_dict() for entry in pending],
                'dead': dead
            }, indent=2))
        await aiofiles.os.replace(temp_path, self.path)

    async def pending(self) -> List[PendingConfirmation]:
        async with self._lock:
            pending, _ = await self.load()
            return pending

    async def dead_letters(self) -> List[Dict[str, Any]]:
        async with self._lock:
            _, dead = await self.load()
            return dead

    async def enqueue(self, entry: PendingConfirmation):
        async with self._lock:
            pending, dead = await self.load()
            pending.append(entry)
            await self.save(pending, dead)
        logger.info(f"Queued confirmation for reservation {entry.reservation_id} in {self.path}")

    # Delivery

    async def _call(self, method, *args, **kwargs) -> Dict[str, Any]:
        return await asyncio.to_thread(method, *args, **kwargs)

    @backoff.on_exception(backoff.expo, TransientConfirmError, max_tries=CONFIRM_TRIES, factor=0.5)
    async def _confirm_with_retry(self, entry: PendingConfirmation) -> Dict[str, Any]:
        return await self._call(self.client.confirm, entry.reservation_id, entry.signature, entry.nft_address)

    async def _confirm_direct(self, entry: PendingConfirmation) -> Dict[str, Any]:
        return await self._call(
            self.client.confirm_direct,
            signature=entry.signature,
            nft_address=entry.nft_address,
            **entry.fallback
        )

    async def submit(
        self,
        reservation_id: Optional[str],
        signature: Any,
        nft_address: Optional[str] = None,
        fallback: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Record a landed mint with the server.

        Confirms the reservation, retrying transient failures a few times.
        If that does not work the confirmation is queued on disk and a direct
        confirmation is attempted straight away. When the reservation may
        still be pending, it is then confirmed once more so the server
        releases it.

        Args:
            reservation_id: Reservation returned by reserve, if any
            signature: Transaction signature
            nft_address: Minted asset address
            fallback: Keyword arguments for ``MintClient.confirm_direct``
                (collection_address, wallet, quantity, price, network, phase_name)

        Returns:
            True if the server recorded the mint, False if it was queued
        """
        entry = PendingConfirmation(
            signature=encode_signature(signature),
            reservation_id=str(reservation_id) if reservation_id else None,
            nft_address=nft_address,
            fallback=fallback
        )

        reservation_pending = False
        if entry.reservation_id:
            try:
                await self._confirm_with_retry(entry)
                return True
            except TransientConfirmError as e:
                # The reservation may still be pending on the server
                reservation_pending = True
                entry.last_error = str(e)
            except (ReservationMissingError, RejectedRequestError) as e:
                logger.warning(f"Confirm for reservation {entry.reservation_id} refused: {e}")
                entry.last_error = str(e)

        if not entry.can_fall_back:
            entry.attempts = 1
            entry.next_attempt_at = time.time() + self._delay(entry.attempts)
            await self.enqueue(entry)
            return False

        # Queue first so the record survives a crash during the direct attempt
        await self.enqueue(entry)
        try:
            await self._confirm_direct(entry)
        except (TransientConfirmError, ReservationMissingError, RejectedRequestError) as e:
            logger.warning(f"Direct confirmation failed, leaving it queued: {e}")
            return False

        if reservation_pending:
            entry.direct_confirmed = True
            try:
                await self._release_reservation(entry)
            except TransientConfirmError as e:
                entry.attempts = 1
                entry.last_error = str(e)
                entry.next_attempt_at = time.time() + self._delay(entry.attempts)
                await self._replace(entry)
                logger.warning(f"Reservation {entry.reservation_id} left pending, will retry: {e}")
                return True
        await self._remove(entry)
        return True

    async def _release_reservation(self, entry: PendingConfirmation):
        """Close out a reservation whose mint was recorded directly.

        Confirming it again with the same signature makes the server fail the
        reservation and release its items. A missing or already settled
        reservation has nothing left to release.

        Raises:
            TransientConfirmError: Worth retrying later
        """
        try:
            await self._call(self.client.confirm, entry.reservation_id, entry.signature, entry.nft_address)
        except (ReservationMissingError, RejectedRequestError) as e:
            logger.info(f"Reservation {entry.reservation_id} already settled: {e.detail}")

    def _same_entry(self, item: PendingConfirmation, entry: PendingConfirmation) -> bool:
        return item.created_at == entry.created_at and item.signature == entry.signature

    async def _replace(self, entry: PendingConfirmation):
        async with self._lock:
            pending, dead = await self.load()
            pending = [entry if self._same_entry(item, entry) else item for item in pending]
            await self.save(pending, dead)

    async def _remove(self, entry: PendingConfirmation):
        async with self._lock:
            pending, dead = await self.load()
            pending = [item for item in pending if not self._same_entry(item, entry)]
            await self.save(pending, dead)

    def _delay(self, attempts: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** max(attempts - 1, 0)))

    async def _deliver(self, entry: PendingConfirmation) -> bool:
        """Try one delivery. Returns True when the server recorded the mint.

        Raises:
            TransientConfirmError: Worth retrying later
            RejectedRequestError: Will never succeed
        """
        if entry.direct_confirmed:
            await self._release_reservation(entry)
            return True

        if entry.reservation_id:
            try:
                await self._call(self.client.confirm, entry.reservation_id, entry.signature, entry.nft_address)
                return True
            except (ReservationMissingError, RejectedRequestError) as e:
                # Missing or already failed reservations are recorded directly
                if not entry.can_fall_back:
                    raise RejectedRequestError(e.detail, e.status_code, e.action) from e
                logger.info(f"Reservation {entry.reservation_id} not confirmable ({e}), confirming directly")

        if not entry.can_fall_back:
            raise RejectedRequestError("No reservation and no direct confirmation details")
        try:
            await self._confirm_direct(entry)
        except ReservationMissingError as e:
            raise RejectedRequestError(e.detail, e.status_code, e.action) from e
        return True

    async def drain(self, now: Optional[float] = None) -> Dict[str, int]:
        """Deliver every entry whose retry time has come.

        Returns:
            Counts of delivered, retried and dead entries
        """
        now = now if now is not None else time.time()
        stats = {'delivered': 0, 'retried': 0, 'dead': 0}

        async with self._lock:
            pending, dead = await self.load()
            if not pending:
                return stats

            remaining = []
            for entry in pending:
                if entry.next_attempt_at > now:
                    remaining.append(entry)
                    continue
                try:
                    await self._deliver(entry)
                    stats['delivered'] += 1
                except TransientConfirmError as e:
                    entry.attempts += 1
                    entry.last_error = str(e)
                    entry.next_attempt_at = now + self._delay(entry.attempts)
                    remaining.append(entry)
                    stats['retried'] += 1
                except RejectedRequestError as e:
                    entry.last_error = str(e)
                    dead.append(entry.to_dict())
                    stats['dead'] += 1
                    logger.error(f"Confirmation for reservation {entry.reservation_id} rejected: {e}")

            await self.save(remaining, dead)

        if any(stats.values()):
            logger.info(
                f"Outbox drain: {stats['delivered']} delivered, {stats['retried']} retried, "
                f"{stats['dead']} dead"
            )
        return stats

    def stop(self):
        """Signal the background drain to stop."""
        self._stop_requested = True

    async def run(self):
        """Drain the outbox until stopped."""
        logger.info(f"Starting outbox drain for {self.path}")
        while not self._stop_requested:
            try:
                await self.drain()
            except Exception as e:
                logger.error(f"Error draining outbox: {e}")
            await asyncio.sleep(self.poll_interval)

__all__ = ['ConfirmationOutbox', 'PendingConfirmation']
