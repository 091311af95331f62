import argparse
import asyncio
import logging
import queue

from chessmind.config import SETTINGS
from chessmind.errors import CommandRejected, InvalidHumanMove
from chessmind.events import GameOverEvent, MoveAppliedEvent, ThoughtChunkEvent, TurnErrorEvent
from chessmind.llm_client import AGENT_PROFILES, CredentialStore, InferenceClient
from chessmind.orchestrator import TurnOrchestrator, TurnState
from chessmind.session import PlayerSeat

log = logging.getLogger("play_one")


def seat_from_arg(color: str, value: str) -> PlayerSeat:
    if value == "human":
        return PlayerSeat(color, "human", name="Human")
    if value not in AGENT_PROFILES:
        raise SystemExit(f"Unknown seat '{value}'. Use 'human' or one of: {', '.join(AGENT_PROFILES)}")
    return PlayerSeat(color, "agent", provider_id=value, name=AGENT_PROFILES[value].label)


def print_events(q: "queue.Queue", show_thoughts: bool) -> None:
    while True:
        try:
            evt = q.get_nowait()
        except queue.Empty:
            return
        if isinstance(evt, ThoughtChunkEvent) and show_thoughts:
            print(evt.text, end="", flush=True)
        elif isinstance(evt, MoveAppliedEvent):
            check = " (check)" if evt.in_check else ""
            print(f"\n[ply {evt.ply}] {evt.color}: {evt.san}{check}  via {evt.resolution}")
        elif isinstance(evt, TurnErrorEvent):
            print(f"\n[error] {evt.color}: {evt.reason}")
        elif isinstance(evt, GameOverEvent):
            print(f"\nGame over: {evt.reason} ({evt.result})")


async def play(args) -> TurnOrchestrator:
    orch = TurnOrchestrator(InferenceClient(CredentialStore.from_settings()))
    orch.set_seat("white", seat_from_arg("white", args.white))
    orch.set_seat("black", seat_from_arg("black", args.black))
    events = orch.bus.subscribe()
    orch.start()
    orch.start_game()
    try:
        while orch.state != TurnState.GAME_OVER:
            print_events(events, not args.quiet)
            if len(orch.session.history) >= args.max_plies:
                log.info("Stopping after %d plies", args.max_plies)
                orch.stop_game()
                break
            if orch.busy() or orch.state != TurnState.WAITING_FOR_HUMAN:
                await asyncio.sleep(0.05)
                continue
            color = orch.session.active_color
            if orch.session.active_seat.is_agent:
                answer = (await asyncio.to_thread(input, f"{color} agent failed. Retry? [y/N] ")).strip().lower()
                if answer != "y":
                    orch.stop_game()
                    break
                orch.retry_turn()
                continue
            raw = (await asyncio.to_thread(input, f"\n{orch.session.position.fen}\n{color} to move (SAN/UCI, 'undo', 'quit'): ")).strip()
            if raw == "quit":
                orch.stop_game()
                break
            try:
                if raw == "undo":
                    orch.undo()
                elif raw:
                    orch.submit_human_move(raw)
            except InvalidHumanMove as e:
                print(f"Illegal move. Legal moves: {', '.join(e.legal)}")
            except CommandRejected as e:
                print(e)
        print_events(events, not args.quiet)
    finally:
        await orch.close()
    return orch


if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Play one game in the terminal (human and/or agent seats).")
    ap.add_argument("--white", default="human", help="'human' or an agent provider id (e.g. openai-gpt4)")
    ap.add_argument("--black", default="openai-gpt4", help="'human' or an agent provider id (e.g. claude-sonnet)")
    ap.add_argument("--max-plies", type=int, default=240)
    ap.add_argument("--quiet", action="store_true", help="Do not print streamed agent thinking")
    ap.add_argument("--pgn-out", default=None, help="Optional path to write PGN at end")
    ap.add_argument("--log-level", default=SETTINGS.log_level, help="Python logging level (e.g., INFO, DEBUG)")
    args = ap.parse_args()

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    log.info("Starting game: white=%s black=%s", args.white, args.black)

    orch = asyncio.run(play(args))
    pgn = orch.export_pgn()
    print("PGN:\n", pgn)
    if args.pgn_out:
        with open(args.pgn_out, "w", encoding="utf-8") as f:
            f.write(pgn)
        log.info("Wrote PGN to %s", args.pgn_out)
