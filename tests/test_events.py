"""Unit tests for the progress emitter, invocation streams and the EventBus."""

import queue
import threading

import pytest

from reelforge.errors import ErrorReport, PipelineCancelled
from reelforge.events import (
    CancelToken,
    EventBus,
    EventType,
    InvocationStream,
    ProgressEmitter,
    ProgressEvent,
)


def _event(seq=1, type=EventType.STAGE_LOG, session_id="s1", **data):
    return ProgressEvent(seq=seq, type=type, session_id=session_id, data=data)


# ─── ProgressEvent ───────────────────────────────────────────


def test_event_defaults():
    e = _event()
    assert e.stage == ""
    assert e.item is None
    assert e.data == {}


def test_event_to_dict_is_json_ready():
    d = _event(type=EventType.ITEM_COMPLETE, name="Pip").to_dict()
    assert d["type"] == "item-complete"
    assert d["data"] == {"name": "Pip"}
    assert isinstance(d["timestamp"], str)


# ─── ProgressEmitter ─────────────────────────────────────────


def test_emitter_assigns_increasing_seq():
    em = ProgressEmitter("s1")
    em.stage_start("portraits")
    em.item_complete("portraits", "Pip")
    em.stage_complete("portraits", "1/1")
    assert [e.seq for e in em.events] == [1, 2, 3]
    assert [e.type for e in em.events] == [
        EventType.STAGE_START,
        EventType.ITEM_COMPLETE,
        EventType.STAGE_COMPLETE,
    ]


def test_emitter_concurrent_emits_keep_seq_unique():
    em = ProgressEmitter("s1")

    def worker(n):
        for _ in range(50):
            em.log("frames", f"worker {n}")

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    seqs = [e.seq for e in em.events]
    assert seqs == list(range(1, 201))


def test_emitter_delivers_to_sinks_in_order():
    received = []
    em = ProgressEmitter("s1", sinks=[received.append])
    em.log("scenes", "one")
    em.log("scenes", "two")
    assert [e.message for e in received] == ["one", "two"]


def test_broken_sink_does_not_break_emitter():
    def broken(event):
        raise RuntimeError("observer down")

    received = []
    em = ProgressEmitter("s1", sinks=[broken, received.append])
    em.log("scenes", "still here")
    assert len(received) == 1
    assert len(em.events) == 1


def test_item_error_carries_report():
    em = ProgressEmitter("s1")
    report = ErrorReport(summary="HTTP 500 | boom", type="HTTPError", status_code=500)
    em.item_error("portraits", "Heron", report)
    event = em.events[0]
    assert event.type == EventType.ITEM_ERROR
    assert event.message == "HTTP 500 | boom"
    assert event.data["report"]["status_code"] == 500


def test_raise_if_cancelled():
    token = CancelToken()
    em = ProgressEmitter("s1", cancel=token)
    em.raise_if_cancelled()
    token.cancel()
    with pytest.raises(PipelineCancelled):
        em.raise_if_cancelled()


# ─── EventBus subscribe/unsubscribe ─────────────────────────


def test_subscribe_returns_queue():
    bus = EventBus()
    q = bus.subscribe("s1")
    assert isinstance(q, queue.Queue)


def test_unsubscribe_removes_queue():
    bus = EventBus()
    q = bus.subscribe()
    bus.unsubscribe(q)
    assert all(entry[1] is not q for entry in bus._subscribers)


def test_unsubscribe_nonexistent_is_safe():
    bus = EventBus()
    bus.unsubscribe(queue.Queue())  # should not raise


# ─── EventBus publish ────────────────────────────────────────


def test_publish_filters_by_session():
    bus = EventBus()
    mine = bus.subscribe("s1")
    other = bus.subscribe("s2")
    everyone = bus.subscribe()
    bus.publish(_event(session_id="s1"))
    assert mine.qsize() == 1
    assert other.qsize() == 0
    assert everyone.qsize() == 1


def test_bus_is_an_event_sink():
    bus = EventBus()
    q = bus.subscribe("s1")
    em = ProgressEmitter("s1", sinks=[bus])
    em.log("scenes", "hello")
    assert q.get_nowait().message == "hello"


def test_publish_no_subscribers_is_safe():
    EventBus().publish(_event())


# ─── EventBus stream ─────────────────────────────────────────


def test_stream_ends_on_checkpoint_and_unsubscribes():
    bus = EventBus()
    q = bus.subscribe("s1")
    bus.publish(_event(1))
    bus.publish(_event(2, EventType.CHECKPOINT))
    bus.publish(_event(3))
    seen = [e.seq for e in bus.stream(q, timeout=1)]
    assert seen == [1, 2]
    assert bus._subscribers == []


def test_stream_ends_on_terminal_flag():
    bus = EventBus()
    q = bus.subscribe("s1")
    bus.publish(_event(1, EventType.PIPELINE_ERROR, terminal=True))
    assert [e.seq for e in bus.stream(q, timeout=1)] == [1]


def test_stream_ends_on_idle_timeout():
    bus = EventBus()
    q = bus.subscribe("s1")
    assert list(bus.stream(q, timeout=0.01)) == []


# ─── InvocationStream ────────────────────────────────────────


def test_same_session_invocations_stay_separate():
    bus = EventBus()
    watcher = bus.subscribe("s1")
    first, second = InvocationStream("s1"), InvocationStream("s1")
    em_a = ProgressEmitter("s1", sinks=[first, bus])
    em_b = ProgressEmitter("s1", sinks=[second, bus])

    em_a.log("scenes", "A working")
    em_b.emit(EventType.CHECKPOINT, "pipeline", "B done")
    em_a.emit(EventType.CHECKPOINT, "pipeline", "A done")

    assert [e.message for e in first.stream(timeout=1)] == ["A working", "A done"]
    assert [e.message for e in second.stream(timeout=1)] == ["B done"]
    assert watcher.qsize() == 3


def test_terminate_continues_sequence():
    channel = InvocationStream("s1")
    em = ProgressEmitter("s1", sinks=[channel])
    em.stage_start("scenes")
    em.log("scenes", "planning")
    channel.terminate("socket closed", report={"summary": "socket closed"})

    events = list(channel.stream(timeout=1))
    assert [e.seq for e in events] == [1, 2, 3]
    assert events[-1].type == EventType.PIPELINE_ERROR
    assert events[-1].data["terminal"] is True


def test_terminate_without_prior_events_starts_at_one():
    channel = InvocationStream("s1")
    assert channel.terminate("cancelled", cancelled=True).seq == 1


def test_invocation_stream_ends_on_idle_timeout():
    assert list(InvocationStream("s1").stream(timeout=0.01)) == []
