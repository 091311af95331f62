"""
Prompt builders and config for agent move requests using a modular template.

Callers supply system instructions and a template string with placeholders
that are substituted per turn: {FEN}, {SIDE_TO_MOVE}, {LEGAL_MOVES}, {SAN_HISTORY}.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Sequence

from .rules import LegalMove

DEFAULT_SYSTEM = (
    "You are a chess grandmaster. Analyze positions deeply and explain your thinking process clearly. "
    "Always end with FINAL DECISION: followed by your move in standard algebraic notation. "
    "You will be given the list of legal moves; choose your move from that list only."
)

DEFAULT_TEMPLATE = """You are playing {SIDE_TO_MOVE}. Analyze the EXACT current position given by this FEN: {FEN}

Moves so far (SAN): {SAN_HISTORY}

LEGAL MOVES AVAILABLE: {LEGAL_MOVES}

Structure your analysis as follows:

1. POSITION ASSESSMENT: material balance, king safety, pawn structure, piece activity.
2. CANDIDATE MOVES: 3-5 moves from the legal list, with brief reasoning for each.
3. CALCULATION: the most promising variations, 3-4 moves ahead.
4. STRATEGIC CONSIDERATIONS: long-term plans and weaknesses to exploit.

End your response with a single line:
FINAL DECISION: <your move in standard algebraic notation, copied from the legal list>"""


@dataclass
class PromptConfig:
    """Configuration for shaping move prompts using a custom template."""

    system_instructions: str = DEFAULT_SYSTEM
    template: str = DEFAULT_TEMPLATE
    history_plies: int = 40


def render_custom_prompt(template: str, values: Dict[str, str]) -> str:
    """Replace known placeholders in the template. Unknown tokens are left intact."""
    rendered = template or ""
    for key, val in values.items():
        rendered = rendered.replace(f"{{{key}}}", val)
    return rendered


def san_history_text(history: Sequence[str], max_plies: int) -> str:
    """Numbered SAN move list, truncated to the last max_plies."""
    if max_plies <= 0:
        return ""
    sans: list[str] = []
    for idx, san in enumerate(history):
        if idx % 2 == 0:
            sans.append(f"{idx // 2 + 1}. {san}")
        else:
            sans.append(san)
    return " ".join(sans[-max_plies:])


def build_prompts(fen: str, side: str, legal: Sequence[LegalMove], history: Sequence[str], cfg: PromptConfig | None = None) -> tuple[str, str]:
    """Return (system_prompt, user_prompt) for one agent turn."""
    cfg = cfg or PromptConfig()
    values = {
        "FEN": fen,
        "SIDE_TO_MOVE": side,
        "LEGAL_MOVES": ", ".join(mv.san for mv in legal) or "(none)",
        "SAN_HISTORY": san_history_text(history, cfg.history_plies) or "(none)",
    }
    return cfg.system_instructions, render_custom_prompt(cfg.template, values)
