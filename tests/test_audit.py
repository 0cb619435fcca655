"""
Tests for audit system.

Verifies transition event logging, querying and fan-out.
"""

import json

from adapt_remediate.audit.audit_system import (
    TAG_DUPLICATE_IGNORED,
    AuditStream,
    FileAuditBackend,
    MemoryAuditBackend,
    TransitionEvent,
)


def create_test_event(attempt_id="E1#1", from_state="detected", to_state="matching", **kwargs):
    """Create a test audit event."""
    return TransitionEvent(
        attempt_id=attempt_id,
        error_id=attempt_id.split("#")[0] if attempt_id else "E1",
        from_state=from_state,
        to_state=to_state,
        **kwargs
    )


def test_transition_event_defaults():
    """Test that events get an id and timestamp."""
    first = create_test_event()
    second = create_test_event()

    assert first.event_id != second.event_id
    assert "T" in first.timestamp
    assert first.tag is None


def test_transition_event_to_json():
    """Test audit event JSON serialization."""
    event = create_test_event(detail="pattern fix-001")
    data = json.loads(event.to_json())

    assert data["attempt_id"] == "E1#1"
    assert data["to_state"] == "matching"
    assert data["detail"] == "pattern fix-001"


def test_memory_backend_query_filters():
    backend = MemoryAuditBackend()
    backend.write_event(create_test_event("E1#1"))
    backend.write_event(create_test_event("E2#1"))
    backend.write_event(create_test_event("E1#1", "matching", "backup"))

    events = backend.query_events(attempt_id="E1#1")

    assert [e.to_state for e in events] == ["matching", "backup"]
    assert len(backend.query_events(error_id="E2")) == 1


def test_file_backend_write_and_query(tmp_path):
    """Test that the file backend appends JSONL and reads it back."""
    path = tmp_path / "state" / "audit.jsonl"
    backend = FileAuditBackend(path)

    backend.write_event(create_test_event())
    backend.write_event(create_test_event(
        "E1#2", None, None, tag=TAG_DUPLICATE_IGNORED
    ))

    assert len(path.read_text().splitlines()) == 2
    tagged = backend.query_events(tag=TAG_DUPLICATE_IGNORED)
    assert len(tagged) == 1
    assert tagged[0].attempt_id == "E1#2"


def test_file_backend_skips_invalid_lines(tmp_path):
    path = tmp_path / "audit.jsonl"
    backend = FileAuditBackend(path)
    backend.write_event(create_test_event())
    with path.open("a") as f:
        f.write("not json\n\n")
        f.write(json.dumps({"unexpected": True}) + "\n")
    backend.write_event(create_test_event("E1#1", "matching", "backup"))

    events = backend.query_events()

    assert [e.to_state for e in events] == ["matching", "backup"]


def test_file_backend_limit_keeps_most_recent(tmp_path):
    backend = FileAuditBackend(tmp_path / "audit.jsonl")
    for n in range(5):
        backend.write_event(create_test_event(f"E{n}#1"))

    events = backend.query_events(limit=2)

    assert [e.attempt_id for e in events] == ["E3#1", "E4#1"]


def test_file_backend_survives_reopen(tmp_path):
    path = tmp_path / "audit.jsonl"
    FileAuditBackend(path).write_event(create_test_event())

    assert len(FileAuditBackend(path).query_events()) == 1


class TestAuditStream:
    """Tests for the stream and its subscribers."""

    def test_emit_reaches_backend_and_subscribers(self):
        stream = AuditStream()
        first = stream.subscribe()
        second = stream.subscribe()

        stream.emit(create_test_event())

        assert first.get_nowait().to_state == "matching"
        assert second.get_nowait().to_state == "matching"
        assert len(stream.query()) == 1

    def test_unsubscribe(self):
        stream = AuditStream()
        subscriber = stream.subscribe()
        stream.unsubscribe(subscriber)

        stream.emit(create_test_event())

        assert subscriber.empty()

    def test_subscriber_sees_only_future_events(self):
        stream = AuditStream()
        stream.emit(create_test_event())
        subscriber = stream.subscribe()

        assert subscriber.empty()

    def test_query_by_attempt(self):
        stream = AuditStream(MemoryAuditBackend())
        stream.emit(create_test_event("E1#1"))
        stream.emit(create_test_event("E2#1"))

        assert [e.attempt_id for e in stream.query(attempt_id="E2#1")] == ["E2#1"]
