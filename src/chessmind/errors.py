"""Exception taxonomy shared by the rules adapter, inference transport, and orchestrator."""
from __future__ import annotations


class ChessMindError(Exception):
    """Base class for all ChessMind errors."""


class InvalidPositionError(ChessMindError, ValueError):
    pass


class IllegalMoveError(ChessMindError, ValueError):
    def __init__(self, notation: str, fen: str):
        super().__init__(f"Illegal move '{notation}' in position {fen}")
        self.notation = notation
        self.fen = fen


class InvalidHumanMove(ChessMindError, ValueError):
    """A submitted human move is not in the legal-move list; nothing was changed."""

    def __init__(self, notation: str, legal: list[str]):
        super().__init__(f"Move '{notation}' is not legal here")
        self.notation = notation
        self.legal = legal


class CommandRejected(ChessMindError):
    """A UI command arrived in a state that does not accept it."""


class AgentConfigMissing(ChessMindError):
    def __init__(self, family: str, detail: str | None = None):
        msg = f"No credential configured for provider family '{family}'"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)
        self.family = family


class ProviderError(ChessMindError):
    pass


class ProviderTransportError(ProviderError):
    pass


class ProviderDecodeError(ProviderError):
    pass
