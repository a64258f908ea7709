from __future__ import annotations

import json
from typing import Any

from taskorch.errors import ProviderInvocationError

CLI_PROVIDERS = ("claude", "codex", "gemini", "opencode")


def build_agent_command(
    provider: str,
    *,
    model: str | None = None,
    reasoning_level: str | None = None,
) -> list[str]:
    """Argv for a provider CLI; the prompt is always written to stdin."""
    if provider == "claude":
        command = [
            "claude",
            "--dangerously-skip-permissions",
            "--print",
            "--verbose",
            "--output-format=stream-json",
            "--include-partial-messages",
            "--max-turns",
            "200",
        ]
        if model:
            command.extend(["--model", model])
        return command
    if provider == "codex":
        command = ["codex", "--enable", "multi_agent"]
        if model:
            command.extend(["-m", model])
        if reasoning_level:
            command.extend(["-c", f'model_reasoning_effort="{reasoning_level}"'])
        command.extend(["--yolo", "exec", "--json"])
        return command
    if provider == "gemini":
        command = ["gemini"]
        if model:
            command.extend(["-m", model])
        command.extend(["--yolo", "--output-format=stream-json"])
        return command
    if provider == "opencode":
        command = ["opencode", "run"]
        if model:
            command.extend(["-m", model])
        command.extend(["--format", "json"])
        return command
    raise ProviderInvocationError(f"Unsupported CLI provider: {provider}", provider=provider)


def build_one_shot_command(provider: str, *, model: str | None = None) -> list[str]:
    """Plain-text variant used for bounded meeting turns."""
    if provider == "claude":
        command = ["claude", "--dangerously-skip-permissions", "--print"]
        if model:
            command.extend(["--model", model])
        return command
    if provider == "codex":
        command = ["codex"]
        if model:
            command.extend(["-m", model])
        command.extend(["--yolo", "exec"])
        return command
    return build_agent_command(provider, model=model)


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


def extract_event_text(event: dict[str, Any]) -> str:
    result = event.get("result")
    if isinstance(result, str):
        return result
    item = event.get("item")
    if isinstance(item, dict) and isinstance(item.get("text"), str):
        return item["text"]
    message = event.get("message")
    if isinstance(message, dict):
        event = message
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for entry in content:
            if isinstance(entry, dict):
                text = entry.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    delta = event.get("delta")
    if isinstance(delta, str):
        return delta
    if isinstance(delta, dict) and isinstance(delta.get("text"), str):
        return delta["text"]
    part = event.get("part")
    if isinstance(part, dict) and isinstance(part.get("text"), str):
        return part["text"]
    return ""


def extract_stream_text(raw: str) -> str:
    """Collapse a stream-json transcript into the plain reply text."""
    chunks: list[str] = []
    final: str | None = None
    parse_buffer = ""
    for raw_line in raw.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        candidate = f"{parse_buffer}{line}" if parse_buffer else line
        try:
            event = json.loads(candidate)
            parse_buffer = ""
        except json.JSONDecodeError:
            if appears_partial_json(candidate):
                parse_buffer = candidate
                continue
            parse_buffer = ""
            chunks.append(line)
            continue
        if not isinstance(event, dict):
            continue
        if event.get("type") == "result" and isinstance(event.get("result"), str):
            final = event["result"]
            continue
        text = extract_event_text(event)
        if text:
            chunks.append(text)
    if final is not None:
        return final.strip()
    if parse_buffer:
        chunks.append(parse_buffer)
    return "\n".join(chunks).strip()
