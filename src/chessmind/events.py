"""
Typed event dataclasses.

Lifecycle events travel from the request manager to the orchestrator over one asyncio
queue; each carries the color, generation, and request id it was started under so stale
ones can be dropped. UI events are what the orchestrator publishes to presentation layers.
All events are frozen and serialize with to_dict().
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Union

from .rules import Color


# ---------------- Lifecycle (manager -> orchestrator) ----------------
@dataclass(frozen=True)
class ThoughtChunk:
    color: Color
    generation: int
    request_id: int
    text: str


@dataclass(frozen=True)
class RequestCompleted:
    color: Color
    generation: int
    request_id: int
    raw_text: str


@dataclass(frozen=True)
class RequestFailed:
    color: Color
    generation: int
    request_id: int
    reason: str
    error_type: str


@dataclass(frozen=True)
class RequestCancelled:
    color: Color
    generation: int
    request_id: int


LifecycleEvent = Union[ThoughtChunk, RequestCompleted, RequestFailed, RequestCancelled]


# ---------------- UI (orchestrator -> presentation) ----------------
@dataclass(frozen=True)
class ThoughtChunkEvent:
    color: Color
    text: str
    type: str = "thought_chunk"


@dataclass(frozen=True)
class MoveAppliedEvent:
    color: Color
    san: str
    uci: str
    fen: str
    ply: int
    in_check: bool
    resolution: Optional[str] = None  # "human", "tier:A".."tier:G", "fallback:<kind>"
    type: str = "move_applied"


@dataclass(frozen=True)
class TurnErrorEvent:
    color: Color
    reason: str
    error_type: str
    retryable: bool = True
    type: str = "turn_error"


@dataclass(frozen=True)
class GameOverEvent:
    kind: str
    winner: Optional[Color]
    reason: str
    result: str
    type: str = "game_over"


@dataclass(frozen=True)
class StateChangedEvent:
    state: str
    active_color: Color
    running: bool
    generation: int
    type: str = "state_changed"


UIEvent = Union[ThoughtChunkEvent, MoveAppliedEvent, TurnErrorEvent, GameOverEvent, StateChangedEvent]


def to_dict(event: UIEvent) -> Dict[str, Any]:
    return asdict(event)
