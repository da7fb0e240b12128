import asyncio
import logging

from pipewatch.services.broadcaster import SessionBroadcaster


def test_emit_reaches_session_subscribers_only():
    broadcaster = SessionBroadcaster()
    mine = broadcaster.subscribe("s1")
    other = broadcaster.subscribe("s2")

    broadcaster.emit("s1", "pipeline:status", {"monitor": {"id": "m1"}})

    envelope = mine.get_nowait()
    assert envelope == {
        "type": "pipeline:status",
        "sessionId": "s1",
        "notify": False,
        "monitor": {"id": "m1"},
    }
    assert other.empty()


def test_terminal_events_flagged_for_notification():
    broadcaster = SessionBroadcaster(notifications_enabled=True)
    queue = broadcaster.subscribe("s1")

    broadcaster.emit("s1", "pipeline:complete", {})
    broadcaster.emit("s1", "pipeline:stalled", {})

    assert queue.get_nowait()["notify"] is True
    assert queue.get_nowait()["notify"] is True


def test_notifications_disabled():
    broadcaster = SessionBroadcaster(notifications_enabled=False)
    queue = broadcaster.subscribe("s1")

    broadcaster.emit("s1", "pipeline:error", {"error": "GitHub auth error: 401"})

    envelope = queue.get_nowait()
    assert envelope["notify"] is False
    assert envelope["error"] == "GitHub auth error: 401"


def test_emit_without_subscribers_is_silent():
    SessionBroadcaster().emit("nobody", "pipeline:status", {})


def test_full_queue_drops_event(caplog):
    broadcaster = SessionBroadcaster()
    queue = broadcaster.subscribe("s1", maxsize=1)

    with caplog.at_level(logging.WARNING):
        broadcaster.emit("s1", "pipeline:status", {"n": 1})
        broadcaster.emit("s1", "pipeline:status", {"n": 2})

    assert queue.qsize() == 1
    assert queue.get_nowait()["n"] == 1
    assert "subscriber queue full" in caplog.text


def test_unsubscribe():
    broadcaster = SessionBroadcaster()
    queue = broadcaster.subscribe("s1")
    assert broadcaster.subscriber_count("s1") == 1

    broadcaster.unsubscribe("s1", queue)
    broadcaster.unsubscribe("s1", queue)

    assert broadcaster.subscriber_count() == 0


def test_subscriber_receives_in_event_loop():
    broadcaster = SessionBroadcaster()

    async def run_test():
        queue = broadcaster.subscribe("s1")
        broadcaster.emit("s1", "pipeline:complete", {"monitor": {"status": "success"}})
        return await asyncio.wait_for(queue.get(), timeout=1)

    envelope = asyncio.run(run_test())
    assert envelope["monitor"]["status"] == "success"
