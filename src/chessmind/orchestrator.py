"""
Turn orchestrator: the state machine that runs one game session.

- Decides who moves next, schedules agent requests after a short delay, and chains
  agent-vs-agent play.
- Consumes lifecycle events from TurnRequestManager.events; anything from an older
  generation or a superseded/cancelled request is dropped.
- Agent replies go through the resolver, then the fallback selector when resolution fails.
- Human moves must be one of the current legal moves (exact notation tiers only).
- Publishes UI events on an EventBus; snapshot() is the read-only projection for presenters.

All methods run on the event loop thread; the HTTP layer marshals calls onto it.
"""
from __future__ import annotations

import asyncio
import logging
import queue
import random
import threading
from enum import Enum
from typing import Any, Dict, List, Optional

from . import rules
from .config import SETTINGS, Settings
from .errors import CommandRejected, InvalidHumanMove
from .events import (
    GameOverEvent,
    LifecycleEvent,
    MoveAppliedEvent,
    RequestCancelled,
    RequestCompleted,
    RequestFailed,
    StateChangedEvent,
    ThoughtChunk,
    ThoughtChunkEvent,
    TurnErrorEvent,
    UIEvent,
)
from .fallback import select_fallback_with_reason
from .lifecycle import StreamingClient, TurnRequestManager
from .llm_client import get_profile
from .prompting import PromptConfig, build_prompts
from .resolver import ResolutionFailure, match_candidate, resolve_traced
from .rules import Color, LegalMove, MoveRecord, TerminalReason
from .session import GameSession, PlayerSeat

log = logging.getLogger("orchestrator")


class TurnState(str, Enum):
    STOPPED = "stopped"
    WAITING_FOR_HUMAN = "waiting_for_human"
    AI_TURN_IN_FLIGHT = "ai_turn_in_flight"
    APPLYING = "applying"
    GAME_OVER = "game_over"


class EventBus:
    """Fan-out of UI events to thread-safe subscriber queues."""

    def __init__(self):
        self._subscribers: List["queue.Queue[UIEvent]"] = []
        self._lock = threading.Lock()

    def subscribe(self) -> "queue.Queue[UIEvent]":
        q: "queue.Queue[UIEvent]" = queue.Queue()
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: "queue.Queue[UIEvent]") -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def publish(self, event: UIEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for q in subscribers:
            q.put(event)


class TurnOrchestrator:
    def __init__(
        self,
        client: StreamingClient,
        session: Optional[GameSession] = None,
        settings: Settings = SETTINGS,
        prompt_cfg: Optional[PromptConfig] = None,
        bus: Optional[EventBus] = None,
        rng: Optional[random.Random] = None,
        abort_on_cancel: bool = False,
    ):
        self.client = client
        self.session = session or GameSession()
        self.settings = settings
        self.prompt_cfg = prompt_cfg or PromptConfig()
        self.bus = bus or EventBus()
        self.rng = rng or random.Random()
        self.requests = TurnRequestManager(client, abort_on_cancel=abort_on_cancel)
        self.state = TurnState.STOPPED
        self.game_over: Optional[TerminalReason] = None
        self.last_error: Dict[Color, Optional[str]] = {c: None for c in rules.COLORS}
        self._scheduled: Optional[asyncio.Task] = None
        self._pump: Optional[asyncio.Task] = None

    # ---------------- Loop plumbing -----------------
    def start(self) -> None:
        """Begin consuming lifecycle events (call from the running loop)."""
        if self._pump is None or self._pump.done():
            self._pump = asyncio.create_task(self._consume(), name="orchestrator-pump")

    async def _consume(self) -> None:
        while True:
            event = await self.requests.events.get()
            try:
                self.handle_event(event)
            except Exception:
                log.exception("Failed handling %s", type(event).__name__)

    async def close(self) -> None:
        self._cancel_scheduled()
        await self.requests.aclose()
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None

    def busy(self) -> bool:
        """True while a turn is scheduled, streaming, or has events waiting to be handled."""
        scheduled = self._scheduled is not None and not self._scheduled.done()
        return scheduled or self.requests.any_running() or not self.requests.events.empty()

    def _set_state(self, state: TurnState) -> None:
        self.state = state
        self.bus.publish(StateChangedEvent(
            state=state.value,
            active_color=self.session.active_color,
            running=self.session.running,
            generation=self.session.generation,
        ))

    # ---------------- Commands -----------------
    def start_game(self) -> None:
        if self.state == TurnState.GAME_OVER:
            raise CommandRejected("Game is over; reset to play again")
        if self.session.running:
            return
        self.session.running = True
        log.info("Game started (generation %d, %s to move)", self.session.generation, self.session.active_color)
        reason = rules.terminal_reason(self.session.position)
        if reason.kind != "none":
            self._finish_game(reason)
            return
        self._advance(self.settings.start_delay_s)

    def stop_game(self) -> None:
        self.session.running = False
        self._cancel_scheduled()
        self.requests.cancel_all()
        if self.state != TurnState.GAME_OVER:
            self._set_state(TurnState.STOPPED)
        log.info("Game stopped")

    def toggle(self) -> bool:
        """Start when stopped, stop when running; returns the new running flag."""
        if self.session.running:
            self.stop_game()
        else:
            self.start_game()
        return self.session.running

    def submit_human_move(self, notation: str) -> MoveRecord:
        if not self.session.running or self.state == TurnState.GAME_OVER:
            raise CommandRejected("Game is not running")
        seat = self.session.active_seat
        if seat.is_agent:
            raise CommandRejected(f"It is {seat.color}'s agent turn")
        legal = self.session.legal_moves()
        hit = match_candidate(notation, legal, exact_only=True)
        if hit is None:
            raise InvalidHumanMove(notation, [mv.san for mv in legal])
        return self._apply(hit[1], "human")

    def undo(self) -> int:
        if not self.session.running or self.state == TurnState.GAME_OVER:
            raise CommandRejected("Undo is only available while the game is running")
        if not self.session.history:
            raise CommandRejected("Nothing to undo")
        self._cancel_scheduled()
        self.requests.cancel_all()
        removed = self.session.undo()
        log.info("Undid %d plies (generation %d)", removed, self.session.generation)
        self._advance(self.settings.handoff_delay_s)
        return removed

    def reset(self) -> None:
        self._cancel_scheduled()
        self.requests.cancel_all()
        self.session.reset()
        self.game_over = None
        self.last_error = {c: None for c in rules.COLORS}
        self._set_state(TurnState.STOPPED)

    def set_seat(self, color: Color, seat: PlayerSeat) -> None:
        """Reconfigure a seat; an in-flight request for that color is cancelled right away."""
        if seat.color != color:
            raise ValueError(f"Seat color {seat.color} does not match {color}")
        if seat.is_agent:
            get_profile(seat.provider_id or "")
        if self.requests.cancel(color):
            self.session.transcripts[color].annotate("Seat reconfigured; request cancelled")
        self.session.set_seat(seat)
        log.info("Seat %s -> %s (%s)", color, seat.kind, seat.provider_id or seat.name)
        if self.session.running and self.state != TurnState.GAME_OVER and color == self.session.active_color:
            self._cancel_scheduled()
            self._advance(self.settings.handoff_delay_s)

    def set_credential(self, family: str, value: str) -> None:
        self.client.credentials.set(family, value)
        log.info("Credential for %s %s", family, "set" if value else "cleared")

    def retry_turn(self) -> None:
        """Manually re-trigger the agent turn after a turn error."""
        if not self.session.running or self.state == TurnState.GAME_OVER:
            raise CommandRejected("Game is not running")
        color = self.session.active_color
        if not self.session.active_seat.is_agent:
            raise CommandRejected(f"{color} is a human seat")
        if self.requests.active(color) or (self._scheduled and not self._scheduled.done()):
            raise CommandRejected(f"{color} already has a turn in flight")
        self._schedule_agent_turn(0.0)

    # ---------------- Lifecycle events -----------------
    def handle_event(self, event: LifecycleEvent) -> None:
        if event.generation != self.session.generation or not self.requests.is_current(event):
            log.debug("Dropping stale %s (request %d, generation %d)", type(event).__name__, event.request_id, event.generation)
            return
        color = event.color
        if isinstance(event, ThoughtChunk):
            self.session.transcripts[color].append(event.text)
            self.bus.publish(ThoughtChunkEvent(color=color, text=event.text))
        elif isinstance(event, RequestCompleted):
            self._on_completed(color, event.raw_text)
        elif isinstance(event, RequestFailed):
            self._on_failed(color, event.reason, event.error_type)
        elif isinstance(event, RequestCancelled):
            log.debug("Request %d for %s cancelled", event.request_id, color)

    def _on_completed(self, color: Color, raw_text: str) -> None:
        if color != self.session.active_color or not self.session.running:
            log.warning("Ignoring %s completion outside its turn", color)
            return
        legal = self.session.legal_moves()
        if not legal:
            self._finish_game()
            return
        result, tier = resolve_traced(raw_text, legal)
        if isinstance(result, ResolutionFailure):
            kind, move = select_fallback_with_reason(legal, self.rng)
            note = f"Could not resolve a move ({result.describe()}); playing fallback {move.san} ({kind})"
            self.session.transcripts[color].annotate(note)
            log.warning("%s: %s", color, note)
            resolution = f"fallback:{kind}"
        else:
            move = result
            resolution = f"tier:{tier}"
        self._apply(move, resolution)

    def _on_failed(self, color: Color, reason: str, error_type: str) -> None:
        self.last_error[color] = reason
        self.session.transcripts[color].annotate(f"Error: {reason}")
        log.error("Turn for %s failed (%s): %s", color, error_type, reason)
        self.bus.publish(TurnErrorEvent(color=color, reason=reason, error_type=error_type, retryable=True))
        self._set_state(TurnState.WAITING_FOR_HUMAN if self.session.running else TurnState.STOPPED)

    # ---------------- Transitions -----------------
    def _apply(self, move: LegalMove, resolution: str) -> MoveRecord:
        self._set_state(TurnState.APPLYING)
        mover = self.session.active_seat
        record = self.session.apply(move)
        self.last_error[record.color] = None
        ply = len(self.session.history)
        log.info("[ply %d] %s: move=%s (%s) resolution=%s", ply, record.color, record.san, record.uci, resolution)
        self.bus.publish(MoveAppliedEvent(
            color=record.color,
            san=record.san,
            uci=record.uci,
            fen=self.session.position.fen,
            ply=ply,
            in_check=rules.is_in_check(self.session.position),
            resolution=resolution,
        ))
        reason = rules.terminal_reason(self.session.position)
        if reason.kind != "none":
            self._finish_game(reason)
            return record
        chained = mover.is_agent and self.session.active_seat.is_agent
        self._advance(self.settings.chain_delay_s if chained else self.settings.handoff_delay_s)
        return record

    def _advance(self, delay: float) -> None:
        """Move to the idle state that fits the seat now on move."""
        if not self.session.running:
            self._set_state(TurnState.STOPPED)
        elif self.session.active_seat.is_agent:
            self._schedule_agent_turn(delay)
        else:
            self._set_state(TurnState.WAITING_FOR_HUMAN)

    def _schedule_agent_turn(self, delay: float) -> None:
        self._cancel_scheduled()
        color = self.session.active_color
        generation = self.session.generation
        self._set_state(TurnState.AI_TURN_IN_FLIGHT)
        self._scheduled = asyncio.create_task(self._start_after(delay, color, generation), name=f"schedule-{color}")

    async def _start_after(self, delay: float, color: Color, generation: int) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        if (
            not self.session.running
            or self.session.generation != generation
            or self.session.active_color != color
            or not self.session.active_seat.is_agent
        ):
            log.debug("Scheduled %s turn no longer applies", color)
            return
        self._begin_agent_turn(color)

    def _begin_agent_turn(self, color: Color) -> None:
        legal = self.session.legal_moves()
        if not legal:
            self._finish_game()
            return
        seat = self.session.seats[color]
        self.session.transcripts[color].clear()
        system_prompt, user_prompt = build_prompts(
            self.session.position.fen, color, legal, self.session.sans(), self.prompt_cfg,
        )
        self.requests.start(color, seat.provider_id, system_prompt, user_prompt, self.session.generation)

    def _finish_game(self, reason: Optional[TerminalReason] = None) -> None:
        reason = reason or rules.terminal_reason(self.session.position)
        self._cancel_scheduled()
        self.requests.cancel_all()
        self.session.running = False
        self.game_over = reason
        result = rules.result_string(self.session.position)
        log.info("Game over: %s (%s)", reason.describe(), result)
        self.bus.publish(GameOverEvent(kind=reason.kind, winner=reason.winner, reason=reason.describe(), result=result))
        self._set_state(TurnState.GAME_OVER)

    def _cancel_scheduled(self) -> None:
        if self._scheduled is not None and not self._scheduled.done():
            self._scheduled.cancel()
        self._scheduled = None

    # ---------------- Projections -----------------
    def snapshot(self) -> Dict[str, Any]:
        s = self.session
        position = s.position
        return {
            "state": self.state.value,
            "fen": position.fen,
            "history": s.sans(),
            "active_color": s.active_color,
            "running": s.running,
            "generation": s.generation,
            "in_check": rules.is_in_check(position),
            "result": rules.result_string(position),
            "game_over": None if self.game_over is None else {
                "kind": self.game_over.kind,
                "winner": self.game_over.winner,
                "reason": self.game_over.describe(),
            },
            "thinking": self.state == TurnState.AI_TURN_IN_FLIGHT,
            "seats": {c: seat.to_dict() for c, seat in s.seats.items()},
            "transcripts": {c: t.to_dict() for c, t in s.transcripts.items()},
            "last_error": dict(self.last_error),
            "legal_moves": [
                {"san": mv.san, "uci": mv.lan, "from": mv.from_square, "to": mv.to_square, "promotion": mv.promotion}
                for mv in s.legal_moves()
            ],
            "credentials": self.client.credentials.configured(),
        }

    def export_pgn(self) -> str:
        seats = self.session.seats
        return rules.export_pgn(self.session.position, white=seats["white"].name, black=seats["black"].name)
