import asyncio
import dataclasses
import queue
import random
import unittest

from chessmind import rules
from chessmind.config import SETTINGS
from chessmind.errors import CommandRejected, InvalidHumanMove, ProviderTransportError
from chessmind.events import GameOverEvent, MoveAppliedEvent, RequestCompleted, ThoughtChunkEvent, TurnErrorEvent
from chessmind.llm_client import CredentialStore, InferenceClient
from chessmind.orchestrator import TurnOrchestrator, TurnState
from chessmind.session import GameSession, PlayerSeat

NO_DELAYS = dataclasses.replace(SETTINGS, start_delay_s=0.0, handoff_delay_s=0.0, chain_delay_s=0.0)
STALEMATE_FEN = "K7/8/1q6/8/8/8/8/7k w - - 0 1"

HUMAN_WHITE = PlayerSeat("white", "human", name="Human")
HUMAN_BLACK = PlayerSeat("black", "human", name="Human")
AGENT_WHITE = PlayerSeat("white", "agent", provider_id="claude-sonnet", name="Claude 3.5 Sonnet")
AGENT_BLACK = PlayerSeat("black", "agent", provider_id="openai-gpt4", name="GPT-4 Turbo")


class FakeAgentClient:
    """Replies with scripted texts in order; raises a transport error once the script runs out."""

    def __init__(self, replies=(), gate=None):
        self.replies = list(replies)
        self.gate = gate
        self.calls = []
        self.credentials = CredentialStore({"openai": "sk-test"})

    async def stream_completion(self, provider_id, system_prompt, user_prompt):
        self.calls.append((provider_id, user_prompt))
        if self.gate is not None:
            await self.gate.wait()
        if not self.replies:
            raise ProviderTransportError("scripted client has no reply left")
        reply = self.replies.pop(0)
        for line in reply.splitlines(keepends=True):
            yield line


def drain(q):
    items = []
    while True:
        try:
            items.append(q.get_nowait())
        except queue.Empty:
            return items


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    def make(self, client, white=HUMAN_WHITE, black=AGENT_BLACK, session=None):
        self.client = client
        self.orch = TurnOrchestrator(client, session=session, settings=NO_DELAYS, rng=random.Random(0))
        self.orch.set_seat("white", white)
        self.orch.set_seat("black", black)
        self.events = self.orch.bus.subscribe()
        self.orch.start()
        return self.orch

    async def asyncTearDown(self):
        await self.orch.close()

    async def wait_idle(self, timeout=5.0):
        await self.until(lambda: not self.orch.busy(), timeout)

    async def until(self, predicate, timeout=2.0):
        async def _poll():
            while not predicate():
                await asyncio.sleep(0.005)
        await asyncio.wait_for(_poll(), timeout)

    def published(self, kind):
        return [e for e in drain(self.events) if isinstance(e, kind)]


class HumanVersusAgentTests(OrchestratorTestCase):
    async def test_agent_answers_human_move(self):
        orch = self.make(FakeAgentClient(["The center.\nFINAL DECISION: e5"]))
        orch.start_game()
        self.assertEqual(orch.state, TurnState.WAITING_FOR_HUMAN)
        record = orch.submit_human_move("e4")
        self.assertEqual(record.san, "e4")
        self.assertTrue(orch.busy())
        await self.wait_idle()
        self.assertEqual(orch.session.sans(), ["e4", "e5"])
        self.assertEqual(orch.state, TurnState.WAITING_FOR_HUMAN)
        self.assertIn("FINAL DECISION: e5", orch.session.transcripts["black"].committed)
        events = drain(self.events)
        moves = [e for e in events if isinstance(e, MoveAppliedEvent)]
        self.assertEqual([(m.color, m.san, m.resolution) for m in moves], [("white", "e4", "human"), ("black", "e5", "tier:A")])
        chunks = "".join(e.text for e in events if isinstance(e, ThoughtChunkEvent))
        self.assertEqual(chunks, "The center.\nFINAL DECISION: e5")
        provider_id, user_prompt = self.client.calls[0]
        self.assertEqual(provider_id, "openai-gpt4")
        self.assertIn("1. e4", user_prompt)
        self.assertIn("black", user_prompt)

    async def test_invalid_human_move_changes_nothing(self):
        orch = self.make(FakeAgentClient())
        orch.start_game()
        before = orch.snapshot()
        with self.assertRaises(InvalidHumanMove) as ctx:
            orch.submit_human_move("e5")
        self.assertIn("e4", ctx.exception.legal)
        self.assertEqual(orch.snapshot(), before)
        self.assertEqual(self.client.calls, [])

    async def test_human_move_requires_running_game(self):
        orch = self.make(FakeAgentClient())
        with self.assertRaises(CommandRejected):
            orch.submit_human_move("e4")

    async def test_human_cannot_move_for_the_agent(self):
        gate = asyncio.Event()
        orch = self.make(FakeAgentClient(["FINAL DECISION: e5"], gate=gate))
        orch.start_game()
        orch.submit_human_move("e4")
        with self.assertRaises(CommandRejected):
            orch.submit_human_move("e5")
        gate.set()
        await self.wait_idle()
        self.assertEqual(orch.session.sans(), ["e4", "e5"])

    async def test_unresolvable_reply_plays_fallback(self):
        orch = self.make(FakeAgentClient(["After careful thought.\nFINAL DECISION: Qxz9"]))
        orch.start_game()
        orch.submit_human_move("e4")
        await self.wait_idle()
        self.assertEqual(len(orch.session.history), 2)
        black = orch.session.history[1]
        self.assertEqual(len(black.san), 2)  # plain pawn advance
        self.assertIn("Could not resolve", orch.session.transcripts["black"].committed)
        moves = self.published(MoveAppliedEvent)
        self.assertEqual(moves[-1].resolution, "fallback:pawn_advance")
        self.assertEqual(orch.state, TurnState.WAITING_FOR_HUMAN)

    async def test_turn_error_then_manual_retry(self):
        client = FakeAgentClient()
        orch = self.make(client)
        orch.start_game()
        orch.submit_human_move("d4")
        await self.wait_idle()
        errors = self.published(TurnErrorEvent)
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].color, "black")
        self.assertEqual(errors[0].error_type, "ProviderTransportError")
        self.assertTrue(errors[0].retryable)
        self.assertEqual(orch.session.sans(), ["d4"])
        self.assertIn("[Error: scripted client has no reply left]", orch.session.transcripts["black"].committed)
        self.assertEqual(orch.snapshot()["last_error"]["black"], "scripted client has no reply left")

        client.replies.append("FINAL DECISION: d5")
        orch.retry_turn()
        await self.wait_idle()
        self.assertEqual(orch.session.sans(), ["d4", "d5"])
        self.assertIsNone(orch.last_error["black"])

    async def test_missing_credentials_surface_as_turn_error(self):
        orch = self.make(InferenceClient(CredentialStore()))
        orch.start_game()
        orch.submit_human_move("e4")
        await self.wait_idle()
        errors = self.published(TurnErrorEvent)
        self.assertEqual([e.error_type for e in errors], ["AgentConfigMissing"])
        self.assertEqual(orch.session.sans(), ["e4"])

    async def test_retry_rejected_on_human_turn(self):
        orch = self.make(FakeAgentClient())
        orch.start_game()
        with self.assertRaises(CommandRejected):
            orch.retry_turn()


class StaleResultTests(OrchestratorTestCase):
    async def test_completion_after_reset_is_discarded(self):
        gate = asyncio.Event()
        orch = self.make(FakeAgentClient(["FINAL DECISION: e4"], gate=gate), white=AGENT_WHITE, black=HUMAN_BLACK)
        orch.start_game()
        await self.until(lambda: orch.requests.active("white") is not None)
        pending = orch.requests.active("white")
        orch.reset()
        self.assertEqual(orch.session.generation, pending.generation + 1)

        orch.handle_event(RequestCompleted(color="white", generation=pending.generation, request_id=pending.request_id, raw_text="FINAL DECISION: e4"))
        gate.set()
        await self.wait_idle()
        self.assertEqual(orch.session.history, [])
        self.assertEqual(orch.session.position, rules.STARTING_POSITION)
        self.assertEqual(orch.state, TurnState.STOPPED)
        self.assertEqual(self.published(MoveAppliedEvent), [])

    async def test_stop_discards_in_flight_reply(self):
        gate = asyncio.Event()
        orch = self.make(FakeAgentClient(["FINAL DECISION: e4"], gate=gate), white=AGENT_WHITE, black=HUMAN_BLACK)
        orch.start_game()
        await self.until(lambda: orch.requests.active("white") is not None)
        orch.stop_game()
        gate.set()
        await self.wait_idle()
        self.assertEqual(orch.session.history, [])
        self.assertEqual(orch.state, TurnState.STOPPED)

    async def test_undo_cancels_pending_agent_turn(self):
        gate = asyncio.Event()
        orch = self.make(FakeAgentClient(["FINAL DECISION: e5"], gate=gate))
        orch.start_game()
        orch.submit_human_move("e4")
        await self.until(lambda: orch.requests.active("black") is not None)
        self.assertEqual(orch.undo(), 1)
        gate.set()
        await self.wait_idle()
        self.assertEqual(orch.session.history, [])
        self.assertEqual(orch.state, TurnState.WAITING_FOR_HUMAN)

    async def test_undo_on_agent_turn_reschedules_agent(self):
        gate = asyncio.Event()
        gate.set()
        orch = self.make(FakeAgentClient(["FINAL DECISION: e5", "FINAL DECISION: c5", "FINAL DECISION: c5"], gate=gate))
        orch.start_game()
        orch.submit_human_move("e4")
        await self.wait_idle()
        self.assertEqual(orch.session.sans(), ["e4", "e5"])
        gate.clear()
        orch.submit_human_move("Nf3")
        await self.until(lambda: orch.requests.active("black") is not None)
        self.assertEqual(orch.undo(), 2)
        self.assertEqual(orch.session.sans(), ["e4"])
        self.assertEqual(orch.session.active_color, "black")
        gate.set()
        await self.wait_idle()
        self.assertEqual(orch.session.sans(), ["e4", "c5"])
        self.assertEqual(orch.state, TurnState.WAITING_FOR_HUMAN)

    async def test_seat_change_mid_turn(self):
        gate = asyncio.Event()
        orch = self.make(FakeAgentClient(["FINAL DECISION: e5"], gate=gate))
        orch.start_game()
        orch.submit_human_move("e4")
        await self.until(lambda: orch.requests.active("black") is not None)
        orch.set_seat("black", HUMAN_BLACK)
        self.assertEqual(orch.state, TurnState.WAITING_FOR_HUMAN)
        self.assertIn("Seat reconfigured", orch.session.transcripts["black"].committed)
        gate.set()
        await self.wait_idle()
        self.assertEqual(orch.session.sans(), ["e4"])
        orch.submit_human_move("c5")
        self.assertEqual(orch.session.sans(), ["e4", "c5"])

    async def test_unknown_provider_rejected(self):
        orch = self.make(FakeAgentClient())
        with self.assertRaises(ValueError):
            orch.set_seat("black", PlayerSeat("black", "agent", provider_id="nope"))
        self.assertEqual(orch.session.seats["black"], AGENT_BLACK)


class GameFlowTests(OrchestratorTestCase):
    async def test_agents_chain_until_a_turn_fails(self):
        orch = self.make(FakeAgentClient(["FINAL DECISION: e4", "FINAL DECISION: e5", "FINAL DECISION: Nf3"]), white=AGENT_WHITE, black=AGENT_BLACK)
        orch.start_game()
        await self.wait_idle()
        self.assertEqual(orch.session.sans(), ["e4", "e5", "Nf3"])
        self.assertEqual([e.color for e in self.published(TurnErrorEvent)], ["black"])
        self.assertEqual([p for p, _ in self.client.calls], ["claude-sonnet", "openai-gpt4", "claude-sonnet", "openai-gpt4"])

    async def test_terminal_start_position_needs_no_agent_call(self):
        session = GameSession(position=rules.position_from_fen(STALEMATE_FEN))
        orch = self.make(FakeAgentClient(["FINAL DECISION: Ka7"]), white=AGENT_WHITE, black=HUMAN_BLACK, session=session)
        orch.start_game()
        await self.wait_idle()
        self.assertEqual(orch.state, TurnState.GAME_OVER)
        self.assertEqual(self.client.calls, [])
        over = self.published(GameOverEvent)
        self.assertEqual(len(over), 1)
        self.assertEqual(over[0].kind, "stalemate")
        self.assertEqual(over[0].result, "1/2-1/2")
        with self.assertRaises(CommandRejected):
            orch.start_game()

    async def test_checkmate_ends_the_game(self):
        orch = self.make(FakeAgentClient(), white=HUMAN_WHITE, black=HUMAN_BLACK)
        orch.start_game()
        for san in ["f3", "e5", "g4", "Qh4#"]:
            orch.submit_human_move(san)
        self.assertEqual(orch.state, TurnState.GAME_OVER)
        self.assertFalse(orch.session.running)
        self.assertEqual(orch.game_over.winner, "black")
        snap = orch.snapshot()
        self.assertEqual(snap["result"], "0-1")
        self.assertEqual(snap["game_over"]["kind"], "checkmate")
        self.assertEqual(snap["legal_moves"], [])
        with self.assertRaises(CommandRejected):
            orch.submit_human_move("a3")
        with self.assertRaises(CommandRejected):
            orch.undo()
        self.assertIn("0-1", orch.export_pgn())

        orch.reset()
        self.assertEqual(orch.state, TurnState.STOPPED)
        self.assertIsNone(orch.game_over)
        orch.start_game()
        self.assertEqual(orch.state, TurnState.WAITING_FOR_HUMAN)

    async def test_undo_rules(self):
        orch = self.make(FakeAgentClient(), white=HUMAN_WHITE, black=HUMAN_BLACK)
        orch.start_game()
        with self.assertRaises(CommandRejected):
            orch.undo()
        for san in ["e4", "e5", "Nf3"]:
            orch.submit_human_move(san)
        generation = orch.session.generation
        self.assertEqual(orch.undo(), 2)
        self.assertEqual(orch.session.sans(), ["e4"])
        self.assertEqual(orch.session.generation, generation + 1)
        self.assertEqual(orch.session.active_color, "black")
        orch.stop_game()
        with self.assertRaises(CommandRejected):
            orch.undo()

    async def test_toggle(self):
        orch = self.make(FakeAgentClient(), white=HUMAN_WHITE, black=HUMAN_BLACK)
        self.assertTrue(orch.toggle())
        self.assertEqual(orch.state, TurnState.WAITING_FOR_HUMAN)
        self.assertFalse(orch.toggle())
        self.assertEqual(orch.state, TurnState.STOPPED)

    async def test_snapshot_and_credentials(self):
        orch = self.make(FakeAgentClient())
        orch.set_credential("anthropic", "sk-ant-test")
        snap = orch.snapshot()
        self.assertEqual(snap["fen"], rules.STARTING_POSITION.fen)
        self.assertEqual(snap["state"], "stopped")
        self.assertEqual(snap["seats"]["black"]["provider_id"], "openai-gpt4")
        self.assertTrue(snap["credentials"]["openai"])
        self.assertTrue(snap["credentials"]["anthropic"])
        self.assertFalse(snap["credentials"]["google"])
        self.assertEqual(len(snap["legal_moves"]), 20)
        with self.assertRaises(ValueError):
            orch.set_credential("mistral", "x")


if __name__ == "__main__":
    unittest.main()
