import threading

from catalog_import.integrations.events import EventChannel, EventType, LoggingEventSink, WorkflowEvent


class ExplodingSink:
    def emit(self, session_id, event):
        raise ConnectionError("socket closed")


def test_inline_delivery_when_not_started(sink):
    channel = EventChannel([sink])
    channel.emit("session-1", EventType.PROGRESS, {"processedRecords": 5})

    assert sink.types() == ["progress"]
    assert sink.events[0]["payload"] == {"processedRecords": 5}


def test_wire_format(sink):
    channel = EventChannel([sink])
    channel.emit(
        "session-1",
        EventType.ANALYSIS_COMPLETE,
        {"mappings": []},
        confidence=0.87,
        auto_advance=True,
        expected_next_step=1,
    )

    event = sink.events[0]
    assert set(event) == {"session_id", "type", "payload", "metadata", "timestamp"}
    assert event["type"] == "analysis_complete"
    assert event["metadata"] == {"autoAdvance": True, "confidence": 0.87, "expectedNextStep": 1}


def test_metadata_omits_unset_fields():
    event = WorkflowEvent(session_id="s", type=EventType.ERROR)
    assert event.to_wire()["metadata"] == {"autoAdvance": False}


def test_dispatcher_preserves_order(sink):
    channel = EventChannel([sink])
    channel.start()
    try:
        for index in range(50):
            channel.emit("session-1", EventType.PROGRESS, {"sequence": index})
        channel.flush()
    finally:
        channel.stop()

    assert [event["payload"]["sequence"] for event in sink.events] == list(range(50))
    assert not channel.running


def test_failing_sink_does_not_block_others(sink):
    channel = EventChannel([ExplodingSink(), sink, LoggingEventSink()])
    channel.emit("session-1", EventType.COMPLETED, {"status": "completed"})

    assert sink.types() == ["completed"]


def test_subscribers_receive_typed_events(sink):
    received = []
    delivered = threading.Event()

    def subscriber(event):
        received.append(event)
        delivered.set()

    def broken(event):
        raise RuntimeError("subscriber bug")

    channel = EventChannel([sink])
    channel.subscribe(broken)
    channel.subscribe(subscriber)
    channel.start()
    try:
        channel.emit("session-1", EventType.CANCELLED, {"status": "cancelled"})
        assert delivered.wait(2)
    finally:
        channel.stop()

    assert received[0].type == EventType.CANCELLED
    assert received[0].session_id == "session-1"
