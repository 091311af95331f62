"""
Game session state: the single mutation point for position, history, and turn bookkeeping.

- PlayerSeat: per-color configuration (human or agent-backed).
- ThinkingTranscript: streamed agent text for one color.
- GameSession: position + history + running flag + generation counter. Every mutation
  computes the new value first and assigns afterwards, so a failure leaves nothing half-done.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional

from . import rules
from .rules import COLORS, Color, LegalMove, MoveRecord, Position

log = logging.getLogger("session")

SeatKind = Literal["human", "agent"]


@dataclass(frozen=True)
class PlayerSeat:
    color: Color
    kind: SeatKind = "human"
    provider_id: Optional[str] = None
    name: str = "Human"

    def __post_init__(self):
        if self.color not in COLORS:
            raise ValueError(f"Unknown color '{self.color}'")
        if self.kind not in ("human", "agent"):
            raise ValueError(f"Unknown seat kind '{self.kind}'")
        if self.kind == "agent" and not self.provider_id:
            raise ValueError("Agent seats need a provider_id")

    @property
    def is_agent(self) -> bool:
        return self.kind == "agent"

    def to_dict(self) -> dict:
        return {"color": self.color, "kind": self.kind, "provider_id": self.provider_id, "name": self.name}


@dataclass
class ThinkingTranscript:
    committed: str = ""
    in_flight: str = ""

    def clear(self) -> None:
        self.committed = ""
        self.in_flight = ""

    def append(self, chunk: str) -> None:
        self.in_flight = chunk
        self.committed += chunk

    def annotate(self, note: str) -> None:
        self.in_flight = ""
        self.committed += f"\n\n[{note}]"

    def to_dict(self) -> dict:
        return {"committed": self.committed, "in_flight": self.in_flight}


def default_seats() -> Dict[Color, PlayerSeat]:
    return {
        "white": PlayerSeat("white", "human", name="Human"),
        "black": PlayerSeat("black", "agent", provider_id="openai-gpt4", name="AI Agent"),
    }


@dataclass
class GameSession:
    position: Position = rules.STARTING_POSITION
    history: List[MoveRecord] = field(default_factory=list)
    running: bool = False
    generation: int = 0
    seats: Dict[Color, PlayerSeat] = field(default_factory=default_seats)
    transcripts: Dict[Color, ThinkingTranscript] = field(default_factory=lambda: {c: ThinkingTranscript() for c in COLORS})

    @property
    def active_color(self) -> Color:
        return "white" if len(self.history) % 2 == 0 else "black"

    @property
    def active_seat(self) -> PlayerSeat:
        return self.seats[self.active_color]

    def sans(self) -> List[str]:
        return [rec.san for rec in self.history]

    def legal_moves(self) -> List[LegalMove]:
        return rules.legal_moves(self.position)

    def apply(self, move: LegalMove | str) -> MoveRecord:
        """Apply one move; position, history, and active color change together or not at all."""
        new_position, record = rules.apply_move(self.position, move)
        if record.color != self.active_color:
            raise RuntimeError(f"History parity mismatch: {record.color} moved on {self.active_color}'s turn")
        self.position = new_position
        self.history.append(record)
        return record

    def bump_generation(self) -> int:
        self.generation += 1
        return self.generation

    def reset(self) -> None:
        self.bump_generation()
        self.position = rules.STARTING_POSITION
        self.history = []
        self.running = False
        for transcript in self.transcripts.values():
            transcript.clear()
        log.info("Session reset (generation %d)", self.generation)

    def undo(self) -> int:
        """Pop the last two plies (or one) and rebuild the position by replay. Returns plies removed."""
        if not self.history:
            return 0
        count = 2 if len(self.history) >= 2 else 1
        kept = self.history[:-count]
        position = rules.replay([rec.san for rec in kept], self.position.start_fen)
        self.position = position
        self.history = kept
        self.bump_generation()
        return count

    def set_seat(self, seat: PlayerSeat) -> None:
        self.seats[seat.color] = seat
