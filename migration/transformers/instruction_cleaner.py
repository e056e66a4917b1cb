"""
HTML cleanup for legacy instruction steps.

Legacy steps were edited in a rich-text field. Cleaning keeps paragraph
and list structure as line breaks, removes every tag, decodes entities and
collapses whitespace. Steps that end up empty are dropped and reported,
never silently discarded.
"""

import html
import re
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import bleach

from schemas.recipe import CleanedInstruction

_SCRIPT_OR_STYLE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_BREAK = re.compile(r"<br\s*/?>", re.IGNORECASE)
_BLOCK_OPEN = re.compile(r"<(p|div|ul|ol|li|h[1-6])\b[^>]*>", re.IGNORECASE)
_BLOCK_CLOSE = re.compile(r"</(p|div|ul|ol|li|h[1-6])\s*>", re.IGNORECASE)
_SPACES = re.compile(r"[ \t\f\v\u00a0]+")
_SPACE_AROUND_NEWLINE = re.compile(r" *\n *")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


@dataclass
class DroppedInstruction:
    original_html: str
    reason: str


@dataclass
class InstructionCleanResult:
    instructions: List[CleanedInstruction] = field(default_factory=list)
    dropped: List[DroppedInstruction] = field(default_factory=list)


def clean_instruction_html(raw_html: Optional[str]) -> str:
    """Convert one step's HTML to plain text with structural line breaks."""
    if not raw_html:
        return ""

    text = _SCRIPT_OR_STYLE.sub("", raw_html)
    text = _BREAK.sub("\n", text)
    text = _BLOCK_OPEN.sub("\n", text)
    text = _BLOCK_CLOSE.sub("\n", text)

    # Remove every remaining tag; bleach escapes the text it keeps
    text = bleach.clean(text, tags=set(), attributes={}, strip=True, strip_comments=True)
    text = html.unescape(text)

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _SPACES.sub(" ", text)
    text = _SPACE_AROUND_NEWLINE.sub("\n", text)
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    return text.strip()


def clean_instructions(steps: List[Tuple[Optional[str], Optional[int]]]) -> InstructionCleanResult:
    """
    Clean steps given as ``(html, duration)`` pairs, in order.

    Surviving steps are renumbered 1..n with positions 0..n-1.
    """
    result = InstructionCleanResult()

    for raw_html, duration in steps:
        content = clean_instruction_html(raw_html)
        if not content:
            result.dropped.append(
                DroppedInstruction(
                    original_html=raw_html or "",
                    reason="Instruction is empty after HTML cleaning"
                )
            )
            continue

        index = len(result.instructions)
        result.instructions.append(
            CleanedInstruction(
                id=str(uuid.uuid4()),
                step=index + 1,
                content=content,
                duration=duration,
                position=index,
                original_html=raw_html
            )
        )

    return result
