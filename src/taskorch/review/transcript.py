from __future__ import annotations

import hashlib
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from taskorch.models import MeetingEntry

ELLIPSIS = "…"
COMPACT_SEPARATOR = " … "
COMPACT_MIN_HEAD = 80
COMPACT_MIN_TAIL = 40
COMPACT_HEAD_RATIO = 0.72
INLINE_WHITESPACE_PATTERN = re.compile(r"[^\S\r\n\u2028\u2029]+")


@dataclass(slots=True, frozen=True)
class TranscriptLine:
    speaker: str
    department: str
    role: str
    content: str
    speaker_agent_id: str | None = None

    @classmethod
    def from_entry(cls, entry: MeetingEntry) -> TranscriptLine:
        return cls(
            speaker=entry.speaker_name,
            department=entry.department_name,
            role=entry.role_label,
            content=entry.content,
            speaker_agent_id=entry.speaker_agent_id,
        )


def collapse_whitespace(text: str) -> str:
    return " ".join(str(text or "").split())


def clip_text(text: str, max_chars: int) -> str:
    cleaned = collapse_whitespace(text)
    if len(cleaned) <= max_chars:
        return cleaned
    if max_chars <= 1:
        return ELLIPSIS[:max_chars]
    return f"{cleaned[: max_chars - 1].rstrip()}{ELLIPSIS}"


def compact_prompt_text(text: str, max_chars: int) -> str:
    """Shrink ``text`` to ``max_chars`` keeping a head and a tail around a separator."""
    trimmed = str(text or "").strip()
    if not trimmed or max_chars <= 0:
        return ""
    if len(trimmed) <= max_chars:
        return trimmed
    cleaned = INLINE_WHITESPACE_PATTERN.sub(" ", trimmed)
    if len(cleaned) <= max_chars:
        return cleaned

    min_total = COMPACT_MIN_HEAD + len(COMPACT_SEPARATOR) + COMPACT_MIN_TAIL
    if max_chars < min_total:
        return cleaned[:max_chars]
    available = max_chars - len(COMPACT_SEPARATOR)
    head_size = min(max(COMPACT_MIN_HEAD, int(available * COMPACT_HEAD_RATIO)), available - COMPACT_MIN_TAIL)
    tail_size = available - head_size
    return f"{cleaned[:head_size].rstrip()}{COMPACT_SEPARATOR}{cleaned[-tail_size:].lstrip()}"


def _turn_noun(count: int) -> str:
    return "turn" if count == 1 else "turns"


def _duplicate_signature(line: TranscriptLine) -> str:
    digest = hashlib.sha256(collapse_whitespace(line.content).encode("utf-8")).hexdigest()
    return f"{line.speaker}|{line.department}|{line.role}|{digest}"


def format_transcript_for_prompt(
    transcript: Sequence[TranscriptLine],
    *,
    max_turns: int = 20,
    max_line_chars: int = 180,
    max_total_chars: int = 2400,
    summarize: Callable[[str, int], str] = clip_text,
) -> str:
    """Render the most recent turns for a meeting prompt within a character budget.

    Repeated turns (same speaker and content) and turns that summarize to
    nothing are dropped; the oldest remaining turns are dropped until the
    rendering fits. Each kind of omission gets a ``(compressed: ...)`` header.
    """
    if not transcript:
        return "(none)"
    max_turns = max(1, max_turns)
    max_line_chars = max(24, max_line_chars)
    max_total_chars = max(120, max_total_chars)

    recent = list(transcript)[-max_turns:]
    omitted_earlier = len(transcript) - len(recent)
    seen: set[str] = set()
    duplicates = 0
    empties = 0
    body_lines: list[str] = []
    for index, turn in enumerate(recent):
        signature = _duplicate_signature(turn)
        if signature in seen:
            duplicates += 1
            continue
        seen.add(signature)
        summarized = clip_text(summarize(turn.content, max_line_chars), max_line_chars)
        if not summarized:
            empties += 1
            continue
        number = omitted_earlier + index + 1
        body_lines.append(f"{number}. {turn.speaker} ({turn.department} {turn.role}): {summarized}")

    base_header: list[str] = []
    if omitted_earlier:
        base_header.append(f"(compressed: omitted {omitted_earlier} earlier {_turn_noun(omitted_earlier)})")
    if duplicates:
        base_header.append(f"(compressed: omitted {duplicates} repetitive {_turn_noun(duplicates)})")
    if empties:
        base_header.append(f"(compressed: omitted {empties} empty-summary {_turn_noun(empties)})")

    start = 0
    while True:
        header = list(base_header)
        if start:
            header.append(f"(compressed: omitted {start} {_turn_noun(start)} for token budget)")
        remaining = body_lines[start:]
        body = "\n".join(remaining) if remaining else "(none)"
        rendered = "\n".join([*header, body]) if header else body
        if len(rendered) <= max_total_chars:
            return rendered
        if start >= len(body_lines):
            return rendered[:max_total_chars]
        start += 1
