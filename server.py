"""
Minimal Flask API that exposes one ChessMind game session to a browser UI.

Endpoints:
- GET  /api/game/state              -> read-only snapshot (FEN, history, seats, transcripts, legal moves)
- POST /api/game/start|stop|toggle  -> run control
- POST /api/game/move               -> submit a human move {"move": "e4"}
- POST /api/game/undo               -> take back the last two plies (or one)
- POST /api/game/reset              -> new game
- POST /api/game/retry              -> re-trigger an agent turn after a turn error
- GET  /api/game/pgn                -> PGN of the current game
- POST /api/seats/<color>           -> {"kind": "human"|"agent", "provider_id": "...", "name": "..."}
- POST /api/credentials/<family>    -> {"value": "..."} (kept in memory only)
- GET  /api/events                  -> Server-Sent Events: thought chunks, moves, turn errors, game over
- GET  /health

The orchestrator lives on a private asyncio loop thread; handlers marshal calls onto it.
"""
from __future__ import annotations

import argparse
import asyncio
import concurrent.futures
import json
import logging
import queue
import threading
from typing import Any, Callable

from flask import Flask, Response, jsonify, request

from chessmind.config import SETTINGS
from chessmind.errors import ChessMindError, InvalidHumanMove
from chessmind.events import to_dict
from chessmind.llm_client import AGENT_PROFILES, CredentialStore, InferenceClient
from chessmind.orchestrator import TurnOrchestrator
from chessmind.session import PlayerSeat

logging.basicConfig(level=getattr(logging, SETTINGS.log_level.upper(), logging.INFO), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
log = logging.getLogger("server")

CALL_TIMEOUT_S = 10.0


class GameHost:
    """Owns the event loop thread and the single orchestrator running on it."""

    def __init__(self, factory: Callable[[], TurnOrchestrator]):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name="chessmind-loop", daemon=True)
        self._thread.start()
        self.orchestrator: TurnOrchestrator = self.call(factory)
        self.call(self.orchestrator.start)

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run fn(*args) on the loop thread and return its result (exceptions propagate)."""
        async def _invoke():
            return fn(*args)
        fut = asyncio.run_coroutine_threadsafe(_invoke(), self.loop)
        try:
            return fut.result(timeout=CALL_TIMEOUT_S)
        except concurrent.futures.TimeoutError:
            fut.cancel()
            raise

    def shutdown(self) -> None:
        asyncio.run_coroutine_threadsafe(self.orchestrator.close(), self.loop).result(timeout=CALL_TIMEOUT_S)
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=CALL_TIMEOUT_S)
        self.loop.close()


def create_app(host: GameHost | None = None) -> Flask:
    host = host or GameHost(lambda: TurnOrchestrator(InferenceClient(CredentialStore.from_settings())))
    app = Flask(__name__)
    app.config["GAME_HOST"] = host
    orch = host.orchestrator

    @app.errorhandler(ChessMindError)
    def _chessmind_error(e: ChessMindError):
        payload: dict = {"error": str(e), "type": type(e).__name__}
        if isinstance(e, InvalidHumanMove):
            payload["legal_moves"] = e.legal
        return jsonify(payload), 400

    @app.errorhandler(ValueError)
    def _value_error(e: ValueError):
        return jsonify({"error": str(e), "type": "ValueError"}), 400

    def _json_body() -> dict:
        data = request.get_json(force=True, silent=True)
        return data if isinstance(data, dict) else {}

    def _state():
        return jsonify(host.call(orch.snapshot))

    @app.route("/health")
    def health():
        return jsonify({"ok": True})

    @app.route("/api/agents")
    def agents():
        return jsonify([{"provider_id": p.provider_id, "family": p.family, "label": p.label} for p in AGENT_PROFILES.values()])

    @app.route("/api/game/state")
    def game_state():
        return _state()

    @app.route("/api/game/start", methods=["POST"])
    def game_start():
        host.call(orch.start_game)
        return _state()

    @app.route("/api/game/stop", methods=["POST"])
    def game_stop():
        host.call(orch.stop_game)
        return _state()

    @app.route("/api/game/toggle", methods=["POST"])
    def game_toggle():
        host.call(orch.toggle)
        return _state()

    @app.route("/api/game/move", methods=["POST"])
    def game_move():
        data = _json_body()
        move = data.get("move")
        if not isinstance(move, str) or not move.strip():
            return jsonify({"error": "move must be a non-empty string"}), 400
        move = move.strip()
        record = host.call(orch.submit_human_move, move)
        state = host.call(orch.snapshot)
        state["applied"] = {"san": record.san, "uci": record.uci, "color": record.color}
        return jsonify(state)

    @app.route("/api/game/undo", methods=["POST"])
    def game_undo():
        removed = host.call(orch.undo)
        state = host.call(orch.snapshot)
        state["undone_plies"] = removed
        return jsonify(state)

    @app.route("/api/game/reset", methods=["POST"])
    def game_reset():
        host.call(orch.reset)
        return _state()

    @app.route("/api/game/retry", methods=["POST"])
    def game_retry():
        host.call(orch.retry_turn)
        return _state()

    @app.route("/api/game/pgn")
    def game_pgn():
        return Response(host.call(orch.export_pgn), mimetype="application/x-chess-pgn")

    @app.route("/api/seats/<color>", methods=["POST"])
    def set_seat(color: str):
        data = _json_body()
        kind = data.get("kind", "human")
        provider_id = data.get("provider_id") if kind == "agent" else None
        default_name = AGENT_PROFILES[provider_id].label if provider_id in AGENT_PROFILES else "Human"
        seat = PlayerSeat(color=color, kind=kind, provider_id=provider_id, name=data.get("name") or default_name)
        host.call(orch.set_seat, color, seat)
        return _state()

    @app.route("/api/credentials/<family>", methods=["POST"])
    def set_credential(family: str):
        value = _json_body().get("value") or ""
        if not isinstance(value, str):
            return jsonify({"error": "value must be a string"}), 400
        host.call(orch.set_credential, family, value)
        return jsonify({"credentials": host.call(orch.client.credentials.configured)})

    @app.route("/api/events")
    def events():
        """Server-Sent Events stream of UI events for the current session."""
        q = orch.bus.subscribe()

        def event_stream():
            try:
                yield f"event: hello\ndata: {json.dumps(host.call(orch.snapshot))}\n\n"
                while True:
                    try:
                        item = q.get(timeout=1.0)
                    except queue.Empty:
                        yield "event: keepalive\n\n"
                        continue
                    payload = to_dict(item)
                    yield f"event: {payload['type']}\ndata: {json.dumps(payload)}\n\n"
            finally:
                orch.bus.unsubscribe(q)
        return Response(event_stream(), mimetype="text/event-stream")

    return app


def main():
    parser = argparse.ArgumentParser(description="ChessMind game server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    app = create_app()
    log.info("Serving on http://%s:%d", args.host, args.port)
    app.run(host=args.host, port=args.port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
