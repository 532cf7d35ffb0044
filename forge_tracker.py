"""
Forge status tracking for the monitored delegates.

Keeps one entry per monitored delegate, resolves names and public identities
through the participant directory, and classifies every delegate's outcome for
the current round as success, failure or still unknown.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, NamedTuple, Optional

log = logging.getLogger("round_monitor.forge_tracker")


class ParticipantNotFound(LookupError):
    """The directory has no delegate for the given name or identity."""


class LastBlock(NamedTuple):
    height: int
    timestamp: int


class ParticipantRecord(NamedTuple):
    name: Optional[str]
    public_identity: str
    last_block: Optional[LastBlock] = None


class ForgeState(enum.Enum):
    UNKNOWN = "unknown"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class MonitoredParticipant:
    name: Optional[str] = None
    public_identity: Optional[str] = None
    position: Optional[int] = None
    time_to_forge: Optional[int] = None
    state: ForgeState = ForgeState.UNKNOWN

    @property
    def resolved(self) -> bool:
        return bool(self.name and self.public_identity)

    def reset(self) -> None:
        self.position = None
        self.time_to_forge = None
        self.state = ForgeState.UNKNOWN

    def to_dict(self) -> dict:
        return {
            "name":            self.name,
            "public_identity": self.public_identity,
            "position":        self.position,
            "time_to_forge":   self.time_to_forge,
            "state":           self.state.value,
        }


class ForgeStatusTracker:
    def __init__(self, directory):
        self.directory = directory
        self.participants: List[MonitoredParticipant] = []

    # ── Registration ──────────────────────────────────────────────────────────

    def add_names(self, delegate) -> None:
        """Accept the configured ``delegate`` option: a name or a list of names."""
        if isinstance(delegate, str):
            names = [delegate]
        elif isinstance(delegate, (list, tuple)):
            names = delegate
        else:
            return
        for name in names:
            if isinstance(name, str) and name:
                self.participants.append(MonitoredParticipant(name=name))

    def add_secrets(self, secrets: Iterable[str]) -> None:
        for secret in secrets or []:
            try:
                identity = self.directory.resolve_identity(secret)
            except (ValueError, TypeError) as e:
                log.debug("skipping forging secret that does not resolve: %s", e)
                continue
            if identity:
                self.participants.append(MonitoredParticipant(public_identity=identity))

    # ── Round lifecycle ───────────────────────────────────────────────────────

    def prepare_round(self) -> None:
        """Clear per-round state, resolve what can be resolved and deduplicate."""
        for participant in self.participants:
            participant.reset()
        self.resolve_pending()

    def resolve_pending(self) -> None:
        for participant in self.participants:
            if participant.name and not participant.public_identity:
                try:
                    record = self.directory.find_by_name(participant.name)
                    participant.public_identity = record.public_identity
                except ParticipantNotFound:
                    log.debug("delegate %s not found by name", participant.name)
            if participant.public_identity and not participant.name:
                try:
                    record = self.directory.find_by_identity(participant.public_identity)
                    if record.name:
                        participant.name = record.name
                except ParticipantNotFound:
                    log.debug("delegate %s not found by identity", participant.public_identity)
        self._deduplicate()

    def _deduplicate(self) -> None:
        kept: List[MonitoredParticipant] = []
        for participant in self.participants:
            duplicate = None
            for other in kept:
                if participant.public_identity and other.public_identity:
                    same = participant.public_identity == other.public_identity
                else:
                    same = (participant.name == other.name
                            and participant.public_identity == other.public_identity)
                if same:
                    duplicate = other
                    break
            if duplicate is None:
                kept.append(participant)
            elif not duplicate.name:
                duplicate.name = participant.name
        self.participants = kept

    # ── Queries ───────────────────────────────────────────────────────────────

    def monitoring_any(self) -> bool:
        """True when some delegate has a resolvable forging window."""
        return any(p.resolved for p in self.participants)

    def find(self, name: str) -> Optional[MonitoredParticipant]:
        match = None
        for participant in self.participants:
            if participant.name == name:
                match = participant
        return match

    # ── Classification ────────────────────────────────────────────────────────

    def update(
        self,
        live_order: List[str],
        fixed_order: List[str],
        live_slot: int,
        anchor_slot: int,
        block_time: int,
        slot_of: Callable[[int], int],
    ) -> List[MonitoredParticipant]:
        """Refresh position, time to forge and state; return the delegates
        forging in this round, in live order.

        ``slot_of`` maps a block timestamp to its slot number.
        """
        for participant in self.participants:
            participant.position = None
            participant.time_to_forge = None

        forging: List[MonitoredParticipant] = []
        for index, name in enumerate(live_order):
            participant = self.find(name)
            if participant is None:
                continue
            if participant.state is ForgeState.UNKNOWN:
                self._classify(participant, fixed_order, live_slot, anchor_slot, slot_of)
            participant.position = index
            participant.time_to_forge = index * block_time
            forging.append(participant)
        return forging

    def _classify(self, participant, fixed_order, live_slot, anchor_slot, slot_of) -> None:
        try:
            record = self.directory.find_by_name(participant.name)
        except ParticipantNotFound:
            log.debug("delegate %s not found, state left unknown", participant.name)
            return
        last_block = record.last_block
        if not last_block or not last_block.height:
            return
        last_slot = slot_of(last_block.timestamp)
        if last_slot >= anchor_slot:
            participant.state = ForgeState.SUCCESS
        elif participant.name in fixed_order and live_slot > anchor_slot + fixed_order.index(participant.name):
            participant.state = ForgeState.FAILURE
