from __future__ import annotations

import re
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Literal

from taskorch.review.transcript import ELLIPSIS, TranscriptLine, clip_text, collapse_whitespace

MemoPhase = Literal["planned", "review"]

PROJECT_MEMO_MAX_CHARS = 18_000
MEMO_NOTE_MAX_CHARS = 220
FINAL_EVIDENCE_MAX_CHARS = 140
FINAL_EVIDENCE_MAX_LINES = 6
PLANNED_ACTION_MIN_CHARS = 8

ISSUE_PATTERN = re.compile(
    r"보완|보류|리스크|미첨부|미구축|미완료|불가|부족|0%|hold|revise|revision|required|pending"
    r"|risk|block|missing|not attached|incomplete|保留|修正|补充|未完成|未附|风险",
    re.IGNORECASE,
)
LEADING_BULLET_PATTERN = re.compile(r"^[\s\-*0-9.)]+")
SPEAKER_PREFIX_PATTERN = re.compile(r"^[^:]{1,80}:\s*")
NON_WORD_PATTERN = re.compile(r"[\W_]+")

NO_ISSUE_FALLBACK_LINE = (
    "- No explicit issue line captured; follow-up verification is still required."
)
HOLD_FALLBACK_ITEM = (
    "A review hold signal was detected. Document residual risks against agreed quality "
    "gates and move to a final decision."
)
FINAL_RESIDUAL_RISK_LINE = "Finalized with conditional approval and documented residual risks."
FINAL_APPROVAL_LINE = "Final approval completed based on full leader alignment and merge readiness."


def memo_stamp(now: datetime | None = None) -> str:
    moment = now or datetime.now(UTC)
    return moment.strftime("%Y-%m-%d %H:%M")


def normalize_revision_note(note: str) -> str:
    """Dedup key for a memo note: bullet and speaker prefix removed, punctuation folded."""
    trimmed = LEADING_BULLET_PATTERN.sub("", collapse_whitespace(note)).strip().lower()
    without_prefix = SPEAKER_PREFIX_PATTERN.sub("", trimmed, count=1)
    normalized = collapse_whitespace(NON_WORD_PATTERN.sub(" ", without_prefix))
    return normalized or without_prefix or trimmed


def _note_for(line: TranscriptLine, base: str) -> str:
    note = f"{line.department} {line.speaker}: {base}"
    return clip_text(note, MEMO_NOTE_MAX_CHARS)


def collect_revision_memo_items(
    transcript: Sequence[TranscriptLine],
    *,
    max_items: int = 8,
    max_per_department: int = 2,
) -> list[str]:
    """Issue-bearing transcript lines as ``"<dept> <speaker>: <text>"`` notes."""
    notes: list[str] = []
    seen: set[str] = set()
    per_department: dict[str, int] = {}
    for line in transcript:
        base = collapse_whitespace(line.content)
        if not base or not ISSUE_PATTERN.search(base):
            continue
        department_key = collapse_whitespace(line.department).lower() or "unknown"
        count = per_department.get(department_key, 0)
        if count >= max_per_department:
            continue
        note = f"{line.department} {line.speaker}: {base}"
        normalized = normalize_revision_note(note)
        if normalized in seen:
            continue
        seen.add(normalized)
        per_department[department_key] = count + 1
        notes.append(clip_text(note, MEMO_NOTE_MAX_CHARS))
        if len(notes) >= max_items:
            break
    return notes


def collect_planned_action_items(
    transcript: Sequence[TranscriptLine],
    *,
    max_items: int = 10,
    max_per_department: int = 2,
) -> list[str]:
    risk_first = collect_revision_memo_items(
        transcript, max_items=max_items, max_per_department=max_per_department
    )
    if risk_first:
        return risk_first
    notes: list[str] = []
    seen: set[str] = set()
    for line in transcript:
        base = collapse_whitespace(line.content)
        if len(base) < PLANNED_ACTION_MIN_CHARS:
            continue
        note = _note_for(line, base)
        key = note.lower()
        if key in seen:
            continue
        seen.add(key)
        notes.append(note)
        if len(notes) >= max_items:
            break
    return notes


def format_project_memo(
    phase: MemoPhase, round_no: int, notes: Sequence[str], *, stamp: str | None = None
) -> str:
    label = "Planned Kickoff" if phase == "planned" else "Review"
    header = (
        f"[PROJECT MEMO] {label} round {round_no} unresolved improvement items "
        f"({stamp or memo_stamp()})"
    )
    body = "\n".join(f"- {note}" for note in notes) if notes else NO_ISSUE_FALLBACK_LINE
    return f"{header}\n{body}"


def format_final_memo(
    round_no: int,
    transcript: Sequence[TranscriptLine],
    *,
    residual_risk: bool,
    stamp: str | None = None,
) -> str:
    header = f"[PROJECT MEMO] Review round {round_no} final package ({stamp or memo_stamp()})"
    lines = [FINAL_RESIDUAL_RISK_LINE if residual_risk else FINAL_APPROVAL_LINE]
    seen: set[str] = set()
    evidence: list[str] = []
    for line in reversed(transcript):
        clipped = clip_text(line.content, FINAL_EVIDENCE_MAX_CHARS)
        if not clipped:
            continue
        rendered = f"{line.department} {line.speaker}: {clipped}"
        key = rendered.lower()
        if key in seen:
            continue
        seen.add(key)
        evidence.append(rendered)
        if len(evidence) >= FINAL_EVIDENCE_MAX_LINES:
            break
    lines.extend(evidence)
    return header + "\n" + "\n".join(f"- {line}" for line in lines)


def append_memo_block(description: str, block: str) -> str:
    combined = f"{description}\n\n{block}" if description else block
    if len(combined) > PROJECT_MEMO_MAX_CHARS:
        combined = combined[-PROJECT_MEMO_MAX_CHARS:]
    return combined


def subtask_title_from_note(note: str) -> str:
    """Short subtask title: bullet and ``speaker:`` prefix dropped, clipped to 54 chars."""
    detail = LEADING_BULLET_PATTERN.sub("", collapse_whitespace(note)).strip()
    after_colon = detail.partition(":")[2].strip() if ":" in detail else detail
    core = (after_colon or detail)[:56].strip()
    if len(core) > 54:
        return f"{core[:53].rstrip()}{ELLIPSIS}"
    return core
