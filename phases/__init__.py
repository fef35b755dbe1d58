"""Mint phase model and resolution.

A collection's mint schedule is an ordered list of phases stored as JSON on
the collection row. Each phase has a time window, a price, optional caps and
an allowlist with three distinct meanings:

- a non-empty list restricts the phase to those wallets,
- an empty list marks the phase as public,
- no list at all defers to the phase_allowlist table.

This module decides which phases are live and which one a given wallet
should mint under. Membership in store-backed allowlists needs a database
lookup, so the wallet-aware selection takes an async membership callback.
"""

import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

class AllowlistMode(str, enum.Enum):
    """How a phase restricts minting wallets."""
    EXPLICIT = "explicit"
    PUBLIC = "public"
    STORE = "store"

class Phase(BaseModel):
    """A named pricing and eligibility window within a collection."""

    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    name: str
    price: Decimal = Decimal('0')
    max_per_wallet: int = Field(0, alias='maxPerWallet')
    max_supply: int = Field(0, alias='maxSupply')
    start_date: Optional[datetime] = Field(None, alias='startDate')
    end_date: Optional[datetime] = Field(None, alias='endDate')
    allowlist: Optional[List[str]] = None

    @field_validator('max_per_wallet', 'max_supply', mode='before')
    @classmethod
    def _absent_means_unlimited(cls, value):
        return 0 if value in (None, '') else value

    @field_validator('price', mode='before')
    @classmethod
    def _absent_price_is_free(cls, value):
        return Decimal('0') if value in (None, '') else value

    @field_validator('start_date', 'end_date', mode='before')
    @classmethod
    def _blank_date_is_open(cls, value):
        return None if value == '' else value

    @field_validator('start_date', 'end_date')
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator('allowlist')
    @classmethod
    def _trim_addresses(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        return [str(address).strip() for address in value]

    @property
    def allowlist_mode(self) -> AllowlistMode:
        if self.allowlist is None:
            return AllowlistMode.STORE
        if len(self.allowlist) == 0:
            return AllowlistMode.PUBLIC
        return AllowlistMode.EXPLICIT

    @property
    def wallet_cap(self) -> Optional[int]:
        """Per-wallet cap, None when unlimited."""
        return self.max_per_wallet if self.max_per_wallet > 0 else None

    @property
    def supply_cap(self) -> Optional[int]:
        """Per-phase supply cap, None when unlimited."""
        return self.max_supply if self.max_supply > 0 else None

    def is_live(self, now: datetime) -> bool:
        """Whether now falls inside [start_date, end_date], open bounds included."""
        if self.start_date is not None and now < self.start_date:
            return False
        if self.end_date is not None and now > self.end_date:
            return False
        return True

    def lists(self, wallet: str) -> bool:
        """Exact match against the inline allowlist."""
        return str(wallet).strip() in (self.allowlist or [])

def parse_phases(raw: Union[str, bytes, Sequence[Any], None]) -> List[Phase]:
    """Parse the phases column of a collection.

    The column holds JSON written by the creator dashboard. Entries that do not
    validate (for example a phase without a name) are skipped with a warning
    rather than making the whole collection unmintable.
    """
    if raw is None or raw == '':
        return []
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Ignoring unparseable phases JSON: {e}")
            return []
    if not isinstance(raw, list):
        logger.warning(f"Ignoring phases value of type {type(raw).__name__}")
        return []

    phases = []
    for entry in raw:
        if isinstance(entry, Phase):
            phases.append(entry)
            continue
        try:
            phases.append(Phase.model_validate(entry))
        except ValidationError as e:
            logger.warning(f"Ignoring invalid phase {entry!r}: {e}")
    return phases

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def live_phases(phases: Iterable[Phase], now: Optional[datetime] = None) -> List[Phase]:
    """All phases whose window contains now, in configured order."""
    now = now or utcnow()
    return [phase for phase in phases if phase.is_live(now)]

def resolve_live(phases: Iterable[Phase], now: Optional[datetime] = None) -> Optional[Phase]:
    """The first live phase in configured order, or None."""
    live = live_phases(phases, now)
    return live[0] if live else None

def find_phase(phases: Iterable[Phase], name: Optional[str]) -> Optional[Phase]:
    if not name:
        return None
    for phase in phases:
        if phase.name == name:
            return phase
    return None

class ResolutionStatus(str, enum.Enum):
    RESOLVED = "resolved"
    NO_PHASES = "no_phases"
    NO_LIVE_PHASE = "no_live_phase"
    NO_ELIGIBLE_PHASE = "no_eligible_phase"

@dataclass
class PhaseResolution:
    """Outcome of choosing the phase a wallet mints under.

    For NO_ELIGIBLE_PHASE, ``phase`` is the highest-priority live phase that
    turned the wallet away, so callers can report which phase blocked it.
    ``listed`` records whether allowlist membership has already been
    established for ``phase``.
    """
    status: ResolutionStatus
    phase: Optional[Phase] = None
    listed: Optional[bool] = None
    live: List[Phase] = field(default_factory=list)

    @property
    def phase_name(self) -> Optional[str]:
        return self.phase.name if self.phase else None

MembershipLookup = Callable[[Phase, str], Awaitable[bool]]

async def phase_admits(phase: Phase, wallet: str, lookup: MembershipLookup) -> bool:
    """Whether a wallet may mint under a phase's allowlist."""
    mode = phase.allowlist_mode
    if mode is AllowlistMode.PUBLIC:
        return True
    if mode is AllowlistMode.EXPLICIT:
        return phase.lists(wallet)
    return await lookup(phase, wallet)

async def resolve_for_wallet(
    phases: Sequence[Phase],
    wallet: str,
    lookup: MembershipLookup,
    requested_name: Optional[str] = None,
    now: Optional[datetime] = None
) -> PhaseResolution:
    """Choose the phase a wallet should mint under.

    A requested phase is honoured when it exists and is live; its allowlist is
    checked later by the caller. Otherwise live phases are ranked: inline
    allowlists naming the wallet, then store-backed allowlists listing it,
    then public phases. Allowlist phases win over an overlapping public window.

    Args:
        phases: The collection's phases in configured order
        wallet: Minting wallet address
        lookup: Async membership check for store-backed allowlists
        requested_name: Phase name sent by the client, may be unknown or stale
        now: Point in time to resolve at

    Returns:
        PhaseResolution describing the chosen phase or why none applies
    """
    if not phases:
        return PhaseResolution(ResolutionStatus.NO_PHASES)

    live = live_phases(phases, now)
    if not live:
        return PhaseResolution(ResolutionStatus.NO_LIVE_PHASE)

    requested = find_phase(live, requested_name)
    if requested is not None:
        return PhaseResolution(ResolutionStatus.RESOLVED, requested, live=live)
    if requested_name:
        logger.debug(f"Requested phase {requested_name!r} is unknown or not live, resolving server side")

    for phase in live:
        if phase.allowlist_mode is AllowlistMode.EXPLICIT and phase.lists(wallet):
            return PhaseResolution(ResolutionStatus.RESOLVED, phase, listed=True, live=live)

    for phase in live:
        if phase.allowlist_mode is AllowlistMode.STORE and await lookup(phase, wallet):
            return PhaseResolution(ResolutionStatus.RESOLVED, phase, listed=True, live=live)

    for phase in live:
        if phase.allowlist_mode is AllowlistMode.PUBLIC:
            return PhaseResolution(ResolutionStatus.RESOLVED, phase, listed=True, live=live)

    return PhaseResolution(ResolutionStatus.NO_ELIGIBLE_PHASE, live[0], listed=False, live=live)

__all__ = [
    'Phase', 'AllowlistMode', 'PhaseResolution', 'ResolutionStatus',
    'parse_phases', 'live_phases', 'resolve_live', 'find_phase',
    'resolve_for_wallet', 'phase_admits', 'utcnow', 'MembershipLookup'
]
