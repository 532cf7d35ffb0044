"""
Status line formatting. Pure functions of the values handed in.
"""

import math
from typing import List, Sequence, Tuple

from forge_tracker import ForgeState

ANSI_BOLD = 1
ANSI_DIM = 2
ANSI_NORMAL = 22

_STATE_MARKS = {
    ForgeState.SUCCESS: " ✅",
    ForgeState.FAILURE: " ❌",
}


def format_duration(seconds: float) -> str:
    total = math.trunc(seconds)
    minutes = total // 60
    text = f"{minutes}m " if minutes else ""
    return text + f"{total - minutes * 60}s"


def _join(entries: Sequence[Tuple[str, int]], ansi: bool) -> str:
    """Comma-join (text, ansi_code) pairs, wrapping each in its code when *ansi*."""
    parts = []
    last = len(entries) - 1
    for i, (text, code) in enumerate(entries):
        text = text if i == last else f"{text},"
        parts.append(f"\x1b[{code}m{text}\x1b[22m" if ansi else text)
    return " ".join(parts)


def format_forging_order(order: Sequence[str], remaining: int, ansi: bool = False) -> str:
    """Forging order with every entry past *remaining* dimmed (it falls in the next round)."""
    return _join([(name, ANSI_DIM if i > remaining else ANSI_NORMAL)
                  for i, name in enumerate(order)], ansi)


def _position_code(position: int, round_position: int, max_participants: int) -> int:
    if position == 0:
        return ANSI_BOLD
    if position + round_position >= max_participants:
        return ANSI_DIM
    return ANSI_NORMAL


def _as_count(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class StatusReporter:
    def __init__(self, ansi: bool = True, show_next_forgers=3, show_round_time: bool = True):
        self.ansi = ansi
        self.show_next_forgers = _as_count(show_next_forgers)
        self.show_round_time = show_round_time

    def forging_order_line(self, order: List[str], remaining: int, new_round: bool) -> str:
        label = "New forging order" if new_round else "Remaining forging order"
        return f"{label}: {format_forging_order(order, remaining, self.ansi)}"

    def status_line(
        self,
        live_order: List[str],
        forging: list,
        round_position: int,
        max_participants: int,
        round_time_remaining: float,
        restart_requested: bool,
    ) -> str:
        """One status line; segments whose data or option is missing are omitted."""
        output = ""

        if forging:
            times = []
            for participant in forging:
                text = f"{format_duration(participant.time_to_forge)} ({participant.name})"
                text += _STATE_MARKS.get(participant.state, "")
                times.append((text, _position_code(participant.position, round_position, max_participants)))
            output += f"Time until we forge: {_join(times, self.ansi)} "

        if self.show_next_forgers > 0:
            next_forgers = _join(
                [(name, _position_code(i, round_position, max_participants))
                 for i, name in enumerate(live_order)][:self.show_next_forgers],
                self.ansi,
            )
            position_text = f"{round_position + 1}/{max_participants}"
            if not forging:
                output = f"Next to forge: {next_forgers} [{position_text}] "
            else:
                output += f"[{position_text}: {next_forgers}] "

        if self.show_round_time:
            round_end = format_duration(round_time_remaining)
            if output:
                output += f"[{round_end}] "
            else:
                output = f"Round ends in {round_end} "

        if restart_requested and output:
            if self.ansi:
                output += "\x1b[1m[Waiting to restart\x1b[22m]"
            else:
                output += "[Waiting to restart]"

        return output.strip()
