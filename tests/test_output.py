import json
from pathlib import Path

from taskorch.supervisor.output import (
    OutputDeduplicator,
    OutputPipeline,
    SubtaskMarker,
    SubtaskMarkerParser,
    normalize_output,
    strip_ansi,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_normalize_output_drops_cli_noise() -> None:
    raw = "\x1b[32mok\x1b[0m\r\nReading prompt from stdin...\n|\n\n\n\nnext line"

    assert strip_ansi("\x1b[1mbold\x1b[0m") == "bold"
    assert normalize_output(raw) == "ok\n\nnext line"
    assert "Reading prompt" in normalize_output(raw, drop_cli_noise=False)


def test_deduplicator_skips_repeats_inside_window() -> None:
    clock = FakeClock()
    dedup = OutputDeduplicator(1500, clock=clock)

    assert dedup.should_skip("t1", "stdout", "building") is False
    clock.now += 1.0
    assert dedup.should_skip("t1", "stdout", "building  ") is True
    assert dedup.should_skip("t1", "stderr", "building") is False
    clock.now += 2.0
    assert dedup.should_skip("t1", "stdout", "building") is False

    dedup.forget("t1")
    assert dedup.should_skip("t1", "stdout", "building") is False


def test_deduplicator_disabled_with_zero_window() -> None:
    dedup = OutputDeduplicator(0)

    assert dedup.should_skip("t1", "stdout", "same") is False
    assert dedup.should_skip("t1", "stdout", "same") is False


def test_parser_reads_claude_task_tool_calls() -> None:
    parser = SubtaskMarkerParser()
    use = json.dumps(
        {"type": "tool_use", "tool": "Task", "id": "toolu_9", "input": {"description": "Add tests"}}
    )
    result = json.dumps({"type": "tool_result", "tool": "Task", "id": "toolu_9"})

    # split mid-line to exercise buffering
    first = parser.feed(use[:20])
    second = parser.feed(use[20:] + "\n" + result + "\n")

    assert first == []
    assert second == [
        SubtaskMarker("declared", "toolu_9", "Add tests"),
        SubtaskMarker("completed", "toolu_9"),
    ]


def test_parser_maps_codex_spawn_and_close_agent() -> None:
    parser = SubtaskMarkerParser()
    lines = [
        {
            "type": "item.started",
            "item": {
                "type": "collab_tool_call",
                "tool": "spawn_agent",
                "id": "item_1",
                "prompt": "Task: Review schema\nmore detail",
            },
        },
        {
            "type": "item.completed",
            "item": {
                "type": "collab_tool_call",
                "tool": "spawn_agent",
                "id": "item_1",
                "receiver_thread_ids": ["thread_a"],
            },
        },
        {
            "type": "item.completed",
            "item": {
                "type": "collab_tool_call",
                "tool": "close_agent",
                "receiver_thread_ids": ["thread_a"],
            },
        },
    ]

    markers = parser.feed("".join(json.dumps(line) + "\n" for line in lines))

    assert markers == [
        SubtaskMarker("declared", "item_1", "Review schema"),
        SubtaskMarker("completed", "item_1"),
    ]


def test_parser_reads_gemini_plan_and_done_messages() -> None:
    parser = SubtaskMarkerParser()
    plan = {"type": "message", "content": 'Plan: {"subtasks": [{"title": "Draft API"}]}'}
    done = {"type": "message", "content": '{"subtask_done": "Draft API"}'}

    declared = parser.feed(json.dumps(plan) + "\n")
    repeated = parser.feed(json.dumps(plan) + "\n")
    completed = parser.feed(json.dumps(done))
    completed += parser.flush()

    assert declared == [SubtaskMarker("declared", "gemini-plan-Draft-API", "Draft API")]
    assert repeated == []
    assert completed == [SubtaskMarker("completed", "gemini-plan-Draft-API", "Draft API")]


def test_parser_ignores_plain_and_broken_lines() -> None:
    parser = SubtaskMarkerParser()

    assert parser.feed("hello world\n{not json\n[1, 2]\n") == []


def test_pipeline_fans_out_to_log_subscribers_and_markers(tmp_path: Path) -> None:
    seen: list[tuple[str, str, str]] = []
    markers: list[tuple[str, SubtaskMarker]] = []
    log_path = tmp_path / "logs" / "t1.log"
    pipeline = OutputPipeline(
        "t1",
        log_path=log_path,
        deduplicator=OutputDeduplicator(1500),
        subscribers=[lambda *event: seen.append(event)],
        marker_sink=lambda task_id, marker: markers.append((task_id, marker)),
        tail_chars=40,
    )

    pipeline.feed("stdout", "step one\n")
    pipeline.feed("stdout", "step one\n")
    pipeline.feed("stderr", "warning\n")
    pipeline.feed(
        "stdout",
        '{"type":"tool_use","tool":"Task","id":"x1","input":{"description":"Sub"}}\n',
    )
    pipeline.append_system_line("[taskorch] idle timeout")
    pipeline.close()

    assert seen[0] == ("t1", "stdout", "step one\n")
    assert [event[1] for event in seen].count("stdout") == 2
    assert markers == [("t1", SubtaskMarker("declared", "x1", "Sub"))]
    content = log_path.read_text(encoding="utf-8")
    assert content.count("step one") == 1
    assert content.endswith("[taskorch] idle timeout\n")
    assert pipeline.tail().endswith("[taskorch] idle timeout")
    assert len(pipeline.tail()) <= 40


def test_pipeline_survives_failing_subscriber() -> None:
    def broken(task_id: str, stream: str, text: str) -> None:
        raise RuntimeError("subscriber down")

    pipeline = OutputPipeline(
        "t1", log_path=None, deduplicator=OutputDeduplicator(0), subscribers=[broken]
    )

    pipeline.feed("stdout", "still recorded\n")

    assert pipeline.tail() == "still recorded"
