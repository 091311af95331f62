"""
Move proposal resolver: map free-form agent text to exactly one legal move.

Two stages, both pure:
1) extract_candidate(): find the decision token. An explicit "FINAL DECISION:" / "MOVE:"
   label wins; otherwise the last lines of the reply are scanned for a move-shaped token.
2) match_candidate(): compare the token against the legal moves in ordered tiers
   (A exact SAN, B exact coordinate, C origin+destination, D suffix/case-insensitive,
   E bare destination, F containment, G piece/castling heuristics). The first tier with
   any hit wins; ties inside a tier go to the earliest move in generation order.

resolve() returns the LegalMove or a ResolutionFailure carrying the inputs for diagnostics.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Literal, Optional, Sequence, Union

from .rules import LegalMove

log = logging.getLogger("resolver")

MARKER_RE = re.compile(r"\b(?:FINAL\s+DECISION|MOVE)\s*[*_]*\s*:\s*[*_]*(?P<rest>[^\n]*)", re.I)
GAME_OVER_RE = re.compile(r"game\s*over|stalemate|no\s+legal\s+moves?|\bdraw\b", re.I)

LAN_RE = re.compile(r"\b([a-h][1-8][a-h][1-8][qrbn]?)\b", re.I)
SAN_RE = re.compile(r"\b([KQRBN]?[a-h]?[1-8]?x?[a-h][1-8](?:=?[QRBN])?[+#]?)(?![\w])", re.I)
CASTLE_RE = re.compile(r"(?<![\w-])([O0]-[O0](?:-[O0])?)(?![\w-])", re.I)
TOKEN_PATTERNS = (LAN_RE, SAN_RE, CASTLE_RE)

TAIL_LINES = 10
SUFFIX_RE = re.compile(r"[+#!?]+$")
SQUARE_RE = re.compile(r"^[a-h][1-8]$")
PIECE_TOKEN_RE = re.compile(r"^(?P<piece>[KQRBN])[a-h]?[1-8]?(?P<capture>x?)(?P<dest>[a-h][1-8])")

FailureReason = Literal["no_legal_moves", "no_candidate", "agent_reported_game_over", "no_match"]


@dataclass(frozen=True)
class ResolutionFailure:
    reason: FailureReason
    raw_text: str
    legal_moves: tuple[LegalMove, ...] = field(default=(), repr=False)
    candidate: Optional[str] = None

    def describe(self) -> str:
        token = f" '{self.candidate}'" if self.candidate else ""
        return f"{self.reason}{token} ({len(self.legal_moves)} legal moves)"


Resolution = Union[LegalMove, ResolutionFailure]


# ------------------------- Extraction -------------------------
def _clean(token: str) -> str:
    token = SUFFIX_RE.sub("", token.strip())
    if re.fullmatch(r"[O0o]-[O0o](-[O0o])?", token):
        token = token.replace("0", "O").replace("o", "O")
    return token.casefold()


def _first_move_token(line: str) -> Optional[str]:
    for pattern in TOKEN_PATTERNS:
        m = pattern.search(line)
        if m:
            return m.group(1)
    return None


def extract_candidate(raw_text: str) -> tuple[Optional[str], Optional[FailureReason]]:
    """Return (token, None) or (None, reason) for a raw agent reply."""
    text = (raw_text or "").replace("\r\n", "\n")
    markers = list(MARKER_RE.finditer(text))
    if markers:
        last = markers[-1]
        decision = last.group("rest").strip(" *_[]`\t")
        if not decision:
            following = text[last.end():].strip().splitlines()
            decision = following[0].strip(" *_[]`\t") if following else ""
        token = _first_move_token(decision)
        if token:
            return token, None
        if GAME_OVER_RE.search(decision):
            return None, "agent_reported_game_over"
        log.debug("Decision marker without a move-shaped token: %r", decision[:80])
    for line in text.splitlines()[-TAIL_LINES:]:
        token = _first_move_token(line)
        if token:
            return token, None
    return None, "no_candidate"


# ------------------------- Matching tiers -------------------------
def _tier_a(token: str, mv: LegalMove) -> bool:
    return mv.san == token


def _tier_b(token: str, mv: LegalMove) -> bool:
    return mv.lan == token.lower()


def _tier_c(token: str, mv: LegalMove) -> bool:
    return mv.squares() == token.lower()


def _tier_d(token: str, mv: LegalMove) -> bool:
    cleaned, san = _clean(token), _clean(mv.san)
    # promotions are often written without "=" (e8Q)
    return cleaned in (san, san.replace("=", ""), mv.lan)


def _is_pawn_move(mv: LegalMove) -> bool:
    return mv.san[:1] in "abcdefgh"


def _tier_e(token: str, mv: LegalMove) -> bool:
    dest = _clean(token)
    return bool(SQUARE_RE.match(dest)) and mv.to_square == dest and _is_pawn_move(mv)


def _tier_e_any(token: str, mv: LegalMove) -> bool:
    dest = _clean(token)
    return bool(SQUARE_RE.match(dest)) and mv.to_square == dest


def _tier_f(token: str, mv: LegalMove) -> bool:
    cleaned, san = _clean(token), _clean(mv.san)
    # two-character fragments are bare squares, handled by tier E
    if min(len(cleaned), len(san)) < 3:
        return False
    return cleaned in san or san in cleaned


def _is_castle(mv: LegalMove) -> bool:
    return mv.san.startswith("O-O")


def _tier_g(token: str, mv: LegalMove) -> bool:
    stripped = SUFFIX_RE.sub("", token.strip())
    m = PIECE_TOKEN_RE.match(stripped)
    if not m:
        return False
    if mv.to_square != m.group("dest"):
        return False
    # king stepping two files onto the castling square
    if m.group("piece") == "K" and _is_castle(mv):
        return True
    if not mv.san.startswith(m.group("piece")):
        return False
    return "x" in mv.san if m.group("capture") else True


TIERS: tuple[tuple[str, Callable[[str, LegalMove], bool]], ...] = (
    ("A", _tier_a),
    ("B", _tier_b),
    ("C", _tier_c),
    ("D", _tier_d),
    ("E", _tier_e),
    ("E", _tier_e_any),
    ("F", _tier_f),
    ("G", _tier_g),
)
EXACT_TIERS = frozenset("ABCD")


def match_candidate(token: str, legal_moves: Sequence[LegalMove], exact_only: bool = False) -> Optional[tuple[str, LegalMove]]:
    """Return (tier, move) for the first tier with a hit, or None."""
    token = (token or "").strip()
    if not token:
        return None
    for tier, predicate in TIERS:
        if exact_only and tier not in EXACT_TIERS:
            break
        for mv in legal_moves:
            if predicate(token, mv):
                return tier, mv
    return None


def resolve_traced(raw_text: str, legal_moves: Sequence[LegalMove]) -> tuple[Resolution, Optional[str]]:
    """Like resolve(), also returning the tier letter that matched (None on failure)."""
    legal = tuple(legal_moves)
    if not legal:
        return ResolutionFailure("no_legal_moves", raw_text, legal), None
    token, reason = extract_candidate(raw_text)
    if token is None:
        return ResolutionFailure(reason or "no_candidate", raw_text, legal), None
    hit = match_candidate(token, legal)
    if hit is None:
        log.debug("No tier matched candidate %r", token)
        return ResolutionFailure("no_match", raw_text, legal, candidate=token), None
    tier, mv = hit
    log.debug("Resolved %r to %s via tier %s", token, mv.san, tier)
    return mv, tier


def resolve(raw_text: str, legal_moves: Sequence[LegalMove]) -> Resolution:
    """Resolve a raw agent reply against the legal moves of the current position."""
    return resolve_traced(raw_text, legal_moves)[0]
