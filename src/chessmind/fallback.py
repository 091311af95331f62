"""
Fallback move selection when an agent reply cannot be resolved.

Preference order (first predicate with any hit wins, earliest move in generation order):
plain pawn advance, quiet piece development, castling, any capture. Only when none of
those apply is a move drawn at random from the remaining list.
"""
from __future__ import annotations

import logging
import random
import re
from typing import Callable, Optional, Sequence

from .rules import LegalMove

log = logging.getLogger("fallback")

PAWN_ADVANCE_RE = re.compile(r"^[a-h][1-8]$")
DEVELOPMENT_RE = re.compile(r"^[NBRQ][a-h][1-8]$")


def _plain(mv: LegalMove) -> str:
    return mv.san.rstrip("+#")


def _is_pawn_advance(mv: LegalMove) -> bool:
    return bool(PAWN_ADVANCE_RE.match(_plain(mv)))


def _is_development(mv: LegalMove) -> bool:
    return bool(DEVELOPMENT_RE.match(_plain(mv)))


def _is_castle(mv: LegalMove) -> bool:
    return mv.san.startswith("O-O")


def _is_capture(mv: LegalMove) -> bool:
    return "x" in mv.san


PREFERENCES: tuple[tuple[str, Callable[[LegalMove], bool]], ...] = (
    ("pawn_advance", _is_pawn_advance),
    ("development", _is_development),
    ("castling", _is_castle),
    ("capture", _is_capture),
)


def select_fallback_with_reason(legal_moves: Sequence[LegalMove], rng: Optional[random.Random] = None) -> tuple[str, LegalMove]:
    if not legal_moves:
        raise ValueError("select_fallback requires at least one legal move")
    for label, predicate in PREFERENCES:
        for mv in legal_moves:
            if predicate(mv):
                return label, mv
    mv = (rng or random).choice(list(legal_moves))
    return "random", mv


def select_fallback(legal_moves: Sequence[LegalMove], rng: Optional[random.Random] = None) -> LegalMove:
    """Pick a plausible substitute move; always a member of legal_moves."""
    label, mv = select_fallback_with_reason(legal_moves, rng)
    log.debug("Fallback picked %s (%s)", mv.san, label)
    return mv
