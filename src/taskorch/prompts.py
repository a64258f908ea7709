from __future__ import annotations

import re
from collections.abc import Sequence

from taskorch.models import Agent, ExecutionSession, Subtask, Task

HANGUL_PATTERN = re.compile(r"[가-힣ㄱ-ㆎ]")
KANA_PATTERN = re.compile(r"[぀-ヿ]")
CJK_PATTERN = re.compile(r"[一-鿿]")

LANGUAGE_NAMES = {"en": "English", "ko": "Korean", "ja": "Japanese", "zh": "Chinese"}

CODE_REVIEW_POLICY_LINES = (
    "[Code Review Policy]",
    "- CRITICAL/HIGH: fix immediately",
    "- MEDIUM/LOW: report as warnings only, no code changes",
)
CONTINUITY_POLICY_LINES = (
    "[Execution Continuity]",
    "- Continue from the latest state without self-introduction or kickoff narration",
    "- Reuse prior codebase understanding and read only the files this delta needs",
    "- Focus on unresolved checklist items and produce concrete diffs first",
)
MEETING_CONTEXT_MAX_CHARS = 1200


def resolve_language(text: str | None) -> str:
    """Language tag of ``text`` by script; Hangul wins over Kana, Kana over Han."""
    if not text:
        return "en"
    if HANGUL_PATTERN.search(text):
        return "ko"
    if KANA_PATTERN.search(text):
        return "ja"
    if CJK_PATTERN.search(text):
        return "zh"
    return "en"


def language_instruction(lang: str) -> str:
    return f"Respond in {LANGUAGE_NAMES.get(lang, 'English')}."


def _subtask_checklist(subtasks: Sequence[Subtask]) -> list[str]:
    lines: list[str] = []
    for subtask in subtasks:
        mark = "x" if subtask.status == "done" else " "
        suffix = ""
        if subtask.target_department_id:
            suffix = f" (delegated to {subtask.target_department_id})"
        elif subtask.status == "blocked" and subtask.blocked_reason:
            suffix = f" (blocked: {subtask.blocked_reason})"
        lines.append(f"- [{mark}] {subtask.title}{suffix}")
    return lines


def build_execution_prompt(
    task: Task,
    agent: Agent,
    *,
    department_name: str,
    session: ExecutionSession,
    subtasks: Sequence[Subtask] = (),
    continuing: bool = False,
) -> str:
    lang = resolve_language(f"{task.title}\n{task.description}")
    parts: list[str] = [
        session.prompt_line(),
        f"[Task] {task.title}",
        f"Assignee: {agent.name} ({department_name})",
    ]
    if task.description.strip():
        parts.extend(["", task.description.strip()])
    own = [subtask for subtask in subtasks if not subtask.target_department_id]
    if own:
        parts.extend(["", "[Subtask checklist]", *_subtask_checklist(own)])
    parts.extend(["", *CODE_REVIEW_POLICY_LINES])
    if continuing:
        parts.extend(["", *CONTINUITY_POLICY_LINES])
    parts.extend(["", language_instruction(lang)])
    return "\n".join(parts)


def build_delegation_description(parent: Task, subtask: Subtask, *, department_name: str) -> str:
    lines = [
        f"[Collaboration request] from parent task '{parent.title}' ({parent.id})",
        f"Target department: {department_name}",
        "",
        f"Subtask: {subtask.title}",
    ]
    if subtask.description.strip():
        lines.append(subtask.description.strip())
    context = parent.description.strip()
    if context:
        lines.extend(["", "[Parent context]", context[-2000:]])
    return "\n".join(lines)


def build_meeting_prompt(
    speaker: Agent,
    *,
    meeting_label: str,
    round_no: int,
    task_title: str,
    task_context: str,
    department_name: str,
    role_label: str,
    transcript_text: str,
    turn_objective: str,
    stance_hint: str = "",
    lang: str = "en",
) -> str:
    lines: list[str | None] = [
        f"[{meeting_label}]",
        f"Task: {task_title}",
        f"Task context: {task_context}" if task_context else None,
        f"Round: {round_no}",
        f"You are {speaker.name} ({department_name} {role_label}).",
        language_instruction(lang),
        "Output rules:",
        "- Return one natural chat message only (no JSON, no markdown).",
        "- Keep it concise: 1-3 sentences.",
        "- Make your stance explicit and actionable.",
        f"Required stance: {stance_hint}" if stance_hint else None,
        f"Current turn objective: {turn_objective}",
        "",
        "[Meeting transcript so far]",
        transcript_text,
    ]
    return "\n".join(line for line in lines if line is not None)
