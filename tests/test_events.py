"""Tests for the event pub/sub system."""

from syosetu_translator.pipeline.events import EventBus, PipelineEvent


def test_event_bus_subscribe_and_emit():
    """Synchronous callback receives events."""
    received = []
    bus = EventBus()
    bus.subscribe(lambda event: received.append(event))
    event = bus.emit("chapter_fetched", chapter=3)
    assert received == [event]
    assert received[0].type == "chapter_fetched"
    assert received[0].data["chapter"] == 3


def test_event_bus_multiple_subscribers():
    """Multiple subscribers each get the event."""
    count = {"a": 0, "b": 0}
    bus = EventBus()
    bus.subscribe(lambda _: count.__setitem__("a", count["a"] + 1))
    bus.subscribe(lambda _: count.__setitem__("b", count["b"] + 1))
    bus.emit("test")
    assert count == {"a": 1, "b": 1}


def test_event_bus_unsubscribe():
    """Unsubscribed callback no longer receives events."""
    received = []
    bus = EventBus()
    sub_id = bus.subscribe(received.append)
    bus.emit("first")
    bus.unsubscribe(sub_id)
    bus.emit("second")
    assert [e.type for e in received] == ["first"]


def test_failing_subscriber_does_not_stop_others():
    """A subscriber raising does not prevent delivery to the rest."""
    received = []
    bus = EventBus()

    def broken(event):
        raise RuntimeError("display gone")

    bus.subscribe(broken)
    bus.subscribe(received.append)
    bus.emit("chapter_translated", chapter=1)
    assert len(received) == 1


def test_pipeline_event_to_dict():
    """Event serializes to a plain dict."""
    event = PipelineEvent(type="chapter_translated", data={"chapter": 5})
    d = event.to_dict()
    assert d["type"] == "chapter_translated"
    assert d["data"]["chapter"] == 5
    assert "timestamp" in d
