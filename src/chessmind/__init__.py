"""
ChessMind package: human and LLM-agent seats playing chess with streamed thinking.

Components:
- rules: python-chess adapter (positions, legal moves, termination, PGN)
- resolver/fallback: map free-form agent text to one legal move, or pick a substitute
- llm_client/lifecycle: streaming inference and the per-color request lifecycle
- session/orchestrator: game state and the turn state machine
"""
# Package exports are intentionally minimal; import modules directly as needed.
