import io
import json

from rich.console import Console

from event_sink import EventSink, MemorySink


def test_memory_sink_collects_structured_events() -> None:
    sink = MemorySink()
    sink.emit("stress_test.start", sessionId="stress-test-1", durationSeconds=10)
    sink.emit("failure.stage", level="critical", stage="peak")

    assert sink.names() == ["stress_test.start", "failure.stage"]
    event = sink.named("stress_test.start")[0]
    assert event["level"] == "info"
    assert event["sessionId"] == "stress-test-1"
    assert "timestamp" in event
    assert sink.emitted_events == 2


def test_failing_sink_never_raises() -> None:
    sink = MemorySink(fail=True)
    for _ in range(3):
        sink.emit("traffic.user_spawned", userId="u1")
    assert sink.dropped_events == 3
    assert sink.emitted_events == 0


def test_json_lines_output(tmp_path) -> None:
    path = tmp_path / "events.jsonl"
    sink = EventSink(json_path=str(path), console_output=False)
    sink.emit("journey.order_created", orderId="order-1", total=42.5)
    sink.emit("journey.payment_attempt", level="warning", status="failed")

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [line["event"] for line in lines] == ["journey.order_created", "journey.payment_attempt"]
    assert lines[0]["total"] == 42.5
    assert lines[1]["level"] == "warning"


def test_console_output_respects_min_level() -> None:
    buffer = io.StringIO()
    sink = EventSink(out=Console(file=buffer, width=200), min_level="warning")
    sink.emit("stress_test.request", level="debug", endpoint="/api/health")
    sink.emit("stress_test.api_error", level="warning", endpoint="/api/orders/[x]")

    output = buffer.getvalue()
    assert "stress_test.request" not in output
    assert "stress_test.api_error" in output
    # field values are escaped, not parsed as markup
    assert "/api/orders/[x]" in output
