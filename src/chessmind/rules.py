"""
Rules oracle adapter: the only place that talks to python-chess.

- Position: immutable value (start FEN + played moves) so repetition draws stay detectable.
- legal_moves/apply_move/terminal queries used by the resolver, session, and orchestrator.
- PGN export of a position's move stack.
"""
from __future__ import annotations

import datetime
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal, Optional, Sequence

import chess
import chess.pgn

from .errors import IllegalMoveError, InvalidPositionError

log = logging.getLogger("rules")

Color = Literal["white", "black"]
COLORS: tuple[Color, Color] = ("white", "black")

UCI_RE = re.compile(r"^[a-h][1-8][a-h][1-8][qrbn]?$", re.I)
CASTLE_ZERO = {"0-0": "O-O", "0-0-0": "O-O-O", "o-o": "O-O", "o-o-o": "O-O-O"}


def opposite(color: Color) -> Color:
    return "black" if color == "white" else "white"


def _color_of(turn: bool) -> Color:
    return "white" if turn == chess.WHITE else "black"


@dataclass(frozen=True)
class Position:
    """Opaque board value. Build with STARTING_POSITION/position_from_fen, never by hand."""
    start_fen: str
    moves: tuple[str, ...]
    fen: str

    def ply(self) -> int:
        return len(self.moves)


@dataclass(frozen=True)
class LegalMove:
    from_square: str
    to_square: str
    san: str
    lan: str
    promotion: Optional[str] = None

    def squares(self) -> str:
        return self.from_square + self.to_square


@dataclass(frozen=True)
class MoveRecord:
    san: str
    uci: str
    color: Color


@dataclass(frozen=True)
class TerminalReason:
    kind: Literal["checkmate", "stalemate", "draw", "none"]
    winner: Optional[Color] = None
    detail: Optional[str] = None

    def describe(self) -> str:
        if self.kind == "checkmate":
            return f"checkmate, {self.winner} wins"
        if self.kind == "draw":
            return f"draw ({self.detail})"
        return self.kind


NOT_TERMINAL = TerminalReason(kind="none")


def position_from_fen(fen: str) -> Position:
    try:
        board = chess.Board(fen)
    except ValueError as e:
        raise InvalidPositionError(f"Invalid FEN '{fen}': {e}") from e
    if not board.is_valid():
        raise InvalidPositionError(f"Invalid FEN '{fen}': {board.status()!r}")
    normalized = board.fen()
    return Position(start_fen=normalized, moves=(), fen=normalized)


STARTING_POSITION = position_from_fen(chess.STARTING_FEN)


def _board(position: Position) -> chess.Board:
    board = chess.Board(position.start_fen)
    for uci in position.moves:
        board.push(chess.Move.from_uci(uci))
    return board


def _legal_move(board: chess.Board, mv: chess.Move) -> LegalMove:
    return LegalMove(
        from_square=chess.square_name(mv.from_square),
        to_square=chess.square_name(mv.to_square),
        san=board.san(mv),
        lan=mv.uci(),
        promotion=chess.piece_symbol(mv.promotion) if mv.promotion else None,
    )


@lru_cache(maxsize=4096)
def _legal_moves_cached(position: Position) -> tuple[LegalMove, ...]:
    board = _board(position)
    return tuple(_legal_move(board, mv) for mv in board.legal_moves)


def legal_moves(position: Position) -> list[LegalMove]:
    """Legal moves in python-chess generation order (stable for a given position)."""
    return list(_legal_moves_cached(position))


def _parse(board: chess.Board, notation: str) -> chess.Move | None:
    token = notation.strip()
    token = CASTLE_ZERO.get(token.lower(), token)
    if UCI_RE.match(token):
        mv = chess.Move.from_uci(token.lower())
        return mv if board.is_legal(mv) else None
    try:
        return board.parse_san(token)
    except ValueError:
        return None


def apply_move(position: Position, notation: str | LegalMove) -> tuple[Position, MoveRecord]:
    """Apply SAN, coordinate notation, or a LegalMove; raises IllegalMoveError if not legal."""
    board = _board(position)
    text = notation.lan if isinstance(notation, LegalMove) else str(notation)
    mv = _parse(board, text) if text else None
    if mv is None:
        log.debug("Rejected move %r in %s", text, position.fen)
        raise IllegalMoveError(text, position.fen)
    record = MoveRecord(san=board.san(mv), uci=mv.uci(), color=_color_of(board.turn))
    board.push(mv)
    return Position(start_fen=position.start_fen, moves=position.moves + (mv.uci(),), fen=board.fen()), record


def replay(sans: Sequence[str], start_fen: str = chess.STARTING_FEN) -> Position:
    """Rebuild a position by replaying standard notation from the start."""
    position = position_from_fen(start_fen)
    for san in sans:
        position, _ = apply_move(position, san)
    return position


def side_to_move(position: Position) -> Color:
    return _color_of(chess.Board(position.fen).turn)


def is_in_check(position: Position) -> bool:
    return chess.Board(position.fen).is_check()


def terminal_reason(position: Position) -> TerminalReason:
    outcome = _board(position).outcome(claim_draw=True)
    if outcome is None:
        return NOT_TERMINAL
    if outcome.termination == chess.Termination.CHECKMATE:
        return TerminalReason(kind="checkmate", winner=_color_of(outcome.winner))
    if outcome.termination == chess.Termination.STALEMATE:
        return TerminalReason(kind="stalemate", detail="stalemate")
    return TerminalReason(kind="draw", detail=outcome.termination.name.lower())


def is_terminal(position: Position) -> bool:
    return terminal_reason(position).kind != "none"


def result_string(position: Position) -> str:
    reason = terminal_reason(position)
    if reason.kind == "checkmate":
        return "1-0" if reason.winner == "white" else "0-1"
    if reason.kind in ("stalemate", "draw"):
        return "1/2-1/2"
    return "*"


def export_pgn(position: Position, white: str = "?", black: str = "?", event: str = "ChessMind Game") -> str:
    """Serialize the position's move stack as PGN with the usual seven-tag roster."""
    board = chess.Board(position.start_fen)
    game = chess.pgn.Game()
    game.headers["Event"] = event
    game.headers["Date"] = datetime.date.today().strftime("%Y.%m.%d")
    game.headers["White"] = white
    game.headers["Black"] = black
    game.headers["Result"] = result_string(position)
    if position.start_fen != chess.STARTING_FEN:
        game.setup(board)
    node = game
    for uci in position.moves:
        node = node.add_variation(chess.Move.from_uci(uci))
    reason = terminal_reason(position)
    if reason.kind != "none":
        game.comment = f"Termination: {reason.describe()}"
    exporter = chess.pgn.StringExporter(headers=True, variations=False, comments=bool(game.comment))
    return game.accept(exporter)
