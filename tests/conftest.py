"""Fakes for the monitor's collaborators.

The default chain has five forgers, an 8 second block time and the network
epoch at unix time 0. Block ``h`` was forged in slot ``h + 100``, so the last
block (height 10) closes round 2 and the clock starts in slot 111.
"""

import pytest

from forge_tracker import LastBlock, ParticipantNotFound, ParticipantRecord
from restart_coordinator import RestartCoordinator
from round_order import BlockData, Milestone
from status_reporter import StatusReporter

BLOCK_TIME = 8
FORGERS = ["A", "B", "C", "D", "E"]


def slot_start(slot: int) -> int:
    return slot * BLOCK_TIME


def block_at(height: int, slot: int = None) -> BlockData:
    slot = height + 100 if slot is None else slot
    return BlockData(height=height, timestamp=slot_start(slot), producer_identity=None)


class FakeClock:
    def __init__(self, t: float = 0.0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def at_slot(self, slot: int, offset: float = 1.0) -> None:
        self.t = slot_start(slot) + offset


class FakeChain:
    def __init__(self, last_height: int = 10, max_participants: int = 5):
        self.milestone = Milestone(height=1, block_time=BLOCK_TIME,
                                   max_participants=max_participants, epoch=0.0)
        self.blocks = {h: block_at(h) for h in range(1, last_height + 1)}
        self.last_height = last_height

    def add_block(self, block: BlockData) -> None:
        self.blocks[block.height] = block
        self.last_height = max(self.last_height, block.height)

    def get_last_block(self) -> BlockData:
        return self.blocks[self.last_height]

    def get_block_at(self, height: int):
        return self.blocks.get(height)

    def get_milestone_at(self, height: int) -> Milestone:
        return self.milestone


class FakeDirectory:
    def __init__(self, names=FORGERS):
        self.records = {
            name: ParticipantRecord(name=name, public_identity=f"pk{name}",
                                    last_block=LastBlock(height=1, timestamp=slot_start(90)))
            for name in names
        }
        self.round_names = list(names)
        self.secrets = {}
        self.round_calls = []

    def set_last_block(self, name: str, slot: int, height: int = 9) -> None:
        record = self.records[name]
        self.records[name] = record._replace(last_block=LastBlock(height=height, timestamp=slot_start(slot)))

    def resolve_identity(self, secret: str) -> str:
        if secret not in self.secrets:
            raise ValueError("bad secret")
        return self.secrets[secret]

    def find_by_name(self, name: str) -> ParticipantRecord:
        try:
            return self.records[name]
        except KeyError:
            raise ParticipantNotFound(name) from None

    def find_by_identity(self, public_identity: str) -> ParticipantRecord:
        for record in self.records.values():
            if record.public_identity == public_identity:
                return record
        raise ParticipantNotFound(public_identity)

    def get_active_participants(self, round_info):
        self.round_calls.append(round_info.round)
        return [self.records[name] for name in self.round_names]

    def add_standby(self, name: str) -> None:
        """A registered delegate that is not forging in the round."""
        self.records[name] = ParticipantRecord(name=name, public_identity=f"pk{name}")


class FakeProcessControl:
    def __init__(self, running=(), failing=()):
        self.running = set(running)
        self.failing = set(failing)
        self.restarted = []
        self.commands = []

    def is_running(self, name: str) -> bool:
        return name in self.running

    def restart(self, name: str) -> bool:
        self.restarted.append(name)
        return name not in self.failing

    def run_command(self, command: str) -> bool:
        self.commands.append(command)
        return True


class Terminator:
    def __init__(self):
        self.calls = 0

    def __call__(self) -> None:
        self.calls += 1


@pytest.fixture
def clock():
    c = FakeClock()
    c.at_slot(111)
    return c


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def process_control():
    return FakeProcessControl(running={"ark-forger", "ark-relay", "ark-core"})


@pytest.fixture
def terminator():
    return Terminator()


@pytest.fixture
def coordinator(process_control, terminator):
    return RestartCoordinator(process_control, restart_time_buffer=20, terminate=terminator)


@pytest.fixture
def reporter():
    return StatusReporter(ansi=False, show_next_forgers=3, show_round_time=True)
