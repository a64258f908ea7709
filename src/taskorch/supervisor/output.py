from __future__ import annotations

import json
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from taskorch.observability import get_logger

logger = get_logger(__name__)

ANSI_ESCAPE_PATTERN = re.compile(
    r"\x1b(?:\[[0-?]*[ -/]*[@-~]|\][^\x07]*(?:\x07|\x1b\\)|[@-Z\\-_])"
)
SPINNER_LINE_PATTERN = re.compile(r"^[\s.·•◦○●◌◍◐◓◑◒◉◎|/\\\-⠁-⣿]+$")
STDIN_NOTICE_PATTERN = re.compile(r"^reading prompt from stdin\.{0,3}$", re.IGNORECASE)
BLANK_RUN_PATTERN = re.compile(r"\n{3,}")
GEMINI_PLAN_PATTERN = re.compile(r'\{"subtasks"\s*:\s*\[.*?\]\}', re.DOTALL)
GEMINI_DONE_PATTERN = re.compile(r'\{"subtask_done"\s*:\s*"(.+?)"\}')

OutputStream = Literal["stdout", "stderr"]
OutputSubscriber = Callable[[str, str, str], None]


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_PATTERN.sub("", text)


def normalize_output(raw: str, *, drop_cli_noise: bool = True) -> str:
    normalized = strip_ansi(raw).replace("\r\n", "\n").replace("\r", "\n")
    if not drop_cli_noise:
        return normalized
    kept: list[str] = []
    for line in normalized.split("\n"):
        trimmed = line.strip()
        if trimmed and (
            STDIN_NOTICE_PATTERN.match(trimmed) or SPINNER_LINE_PATTERN.match(trimmed)
        ):
            continue
        kept.append(line)
    return BLANK_RUN_PATTERN.sub("\n\n", "\n".join(kept))


class OutputDeduplicator:
    """Suppresses a chunk identical to the previous one on the same task stream."""

    def __init__(self, window_ms: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_ms = window_ms
        self._clock = clock
        self._last: dict[str, tuple[str, float]] = {}

    def should_skip(self, task_id: str, stream: str, text: str) -> bool:
        if self.window_ms <= 0:
            return False
        normalized = " ".join(text.split())
        if not normalized:
            return False
        key = f"{task_id}:{stream}"
        now = self._clock()
        previous = self._last.get(key)
        self._last[key] = (normalized, now)
        return (
            previous is not None
            and previous[0] == normalized
            and (now - previous[1]) * 1000 <= self.window_ms
        )

    def forget(self, task_id: str) -> None:
        prefix = f"{task_id}:"
        for key in [key for key in self._last if key.startswith(prefix)]:
            del self._last[key]


@dataclass(slots=True, frozen=True)
class SubtaskMarker:
    kind: Literal["declared", "completed"]
    marker_id: str
    title: str = ""


MarkerSink = Callable[[str, SubtaskMarker], None]


class SubtaskMarkerParser:
    """Reads provider stream-json lines and yields subtask declarations/completions.

    Understands Claude ``Task`` tool calls, Codex ``spawn_agent``/``close_agent``
    collaboration items, and Gemini plan/done JSON embedded in messages.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._codex_threads: dict[str, str] = {}
        self._gemini_titles: set[str] = set()
        self._counter = 0

    def _fallback_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{int(time.time() * 1000)}-{self._counter}"

    def feed(self, chunk: str) -> list[SubtaskMarker]:
        data = self._buffer + chunk
        lines = data.split("\n")
        self._buffer = lines.pop()
        markers: list[SubtaskMarker] = []
        for line in lines:
            markers.extend(self._parse_line(line))
        return markers

    def flush(self) -> list[SubtaskMarker]:
        remainder, self._buffer = self._buffer, ""
        return self._parse_line(remainder) if remainder.strip() else []

    def _parse_line(self, line: str) -> list[SubtaskMarker]:
        stripped = line.strip()
        if not stripped.startswith("{"):
            return []
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            return []
        if not isinstance(event, dict):
            return []
        return self._from_event(event)

    def _from_event(self, event: dict[str, Any]) -> list[SubtaskMarker]:
        event_type = event.get("type")
        markers: list[SubtaskMarker] = []

        if event_type == "tool_use" and event.get("tool") == "Task":
            tool_input = event.get("input") if isinstance(event.get("input"), dict) else {}
            title = str(tool_input.get("description") or "")
            if not title:
                title = str(tool_input.get("prompt") or "")[:100] or "Sub-task"
            marker_id = str(event.get("id") or self._fallback_id("sub"))
            markers.append(SubtaskMarker("declared", marker_id, title))
        elif event_type == "tool_result" and event.get("tool") == "Task":
            if event.get("id"):
                markers.append(SubtaskMarker("completed", str(event["id"])))

        item = event.get("item") if isinstance(event.get("item"), dict) else None
        if item is not None and item.get("type") == "collab_tool_call":
            thread_ids = [str(tid) for tid in item.get("receiver_thread_ids") or []]
            if event_type == "item.started" and item.get("tool") == "spawn_agent":
                prompt = str(item.get("prompt") or "Sub-agent")
                title = re.sub(r"^Task:\s*", "", prompt.split("\n")[0])[:100]
                marker_id = str(item.get("id") or self._fallback_id("codex-spawn"))
                markers.append(SubtaskMarker("declared", marker_id, title))
            elif event_type == "item.completed" and item.get("tool") == "spawn_agent":
                if item.get("id") and thread_ids:
                    self._codex_threads[thread_ids[0]] = str(item["id"])
            elif event_type == "item.completed" and item.get("tool") == "close_agent":
                for thread_id in thread_ids:
                    origin = self._codex_threads.pop(thread_id, None)
                    if origin:
                        markers.append(SubtaskMarker("completed", origin))

        content = event.get("content")
        if event_type == "message" and isinstance(content, str):
            plan_match = GEMINI_PLAN_PATTERN.search(content)
            if plan_match:
                try:
                    plan = json.loads(plan_match.group(0))
                except json.JSONDecodeError:
                    plan = {}
                for entry in plan.get("subtasks", []):
                    title = str(entry.get("title", "")).strip() if isinstance(entry, dict) else ""
                    if not title or title in self._gemini_titles:
                        continue
                    self._gemini_titles.add(title)
                    markers.append(SubtaskMarker("declared", self._gemini_marker_id(title), title))
            done_match = GEMINI_DONE_PATTERN.search(content)
            if done_match:
                title = done_match.group(1)
                markers.append(SubtaskMarker("completed", self._gemini_marker_id(title), title))
        return markers

    @staticmethod
    def _gemini_marker_id(title: str) -> str:
        return "gemini-plan-" + re.sub(r"\s", "-", title[:30])


class OutputPipeline:
    """Normalizes one run's output and fans it out to log file, subscribers and markers."""

    def __init__(
        self,
        task_id: str,
        *,
        log_path: Path | None,
        deduplicator: OutputDeduplicator,
        subscribers: list[OutputSubscriber],
        marker_sink: MarkerSink | None = None,
        tail_chars: int = 2000,
    ) -> None:
        self.task_id = task_id
        self.log_path = log_path
        self.deduplicator = deduplicator
        self.subscribers = subscribers
        self.marker_sink = marker_sink
        self.tail_chars = tail_chars
        self.parser = SubtaskMarkerParser()
        self._tail = ""
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)

    def feed(self, stream: OutputStream, raw: str) -> None:
        if stream == "stdout":
            self._dispatch_markers(self.parser.feed(raw))
        text = normalize_output(raw)
        if not text.strip():
            return
        if self.deduplicator.should_skip(self.task_id, stream, text):
            return
        self._tail = (self._tail + text)[-self.tail_chars :]
        self._write_log(text)
        for subscriber in list(self.subscribers):
            try:
                subscriber(self.task_id, stream, text)
            except Exception:
                logger.exception("output subscriber failed (task=%s)", self.task_id)

    def append_system_line(self, line: str) -> None:
        self._tail = (self._tail + line + "\n")[-self.tail_chars :]
        self._write_log(line + "\n")

    def _write_log(self, text: str) -> None:
        if self.log_path is None:
            return
        try:
            with self.log_path.open("a", encoding="utf-8") as handle:
                handle.write(text)
        except OSError:
            logger.warning("could not write run log %s", self.log_path, exc_info=True)

    def close(self) -> None:
        self._dispatch_markers(self.parser.flush())
        self.deduplicator.forget(self.task_id)

    def tail(self) -> str:
        return self._tail.strip()

    def _dispatch_markers(self, markers: list[SubtaskMarker]) -> None:
        if self.marker_sink is None:
            return
        for marker in markers:
            try:
                self.marker_sink(self.task_id, marker)
            except Exception:
                logger.exception("subtask marker handling failed (task=%s)", self.task_id)
