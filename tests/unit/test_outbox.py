"""
test_outbox.py - Unit tests for post-commit side effects

Tests:
- Publication and FIFO dispatch
- Deduplication by dedup_key
- Handler failures are logged and parked, never raised
- Default handlers for each collaborator
- Concurrent publication
"""

import logging
import threading
from datetime import datetime

from slotledger import (
    InMemoryInquiryThreads, Outbox, RecordingNotifier, RecordingRankChecker, create_default_outbox,
)
from slotledger.outbox import ACTION_INQUIRY_THREAD, ACTION_NOTIFY, ACTION_RANK_CHECK

T0 = datetime(2025, 1, 1, 9)


class TestOutbox:
    """Queue semantics."""

    def test_nothing_runs_before_dispatch(self):
        outbox = Outbox()
        seen = []
        outbox.register("ping", seen.append)
        outbox.publish(T0, "ping")
        assert seen == []
        assert outbox.pending_count() == 1

    def test_dispatch_in_publication_order(self):
        outbox = Outbox()
        seen = []
        outbox.register("ping", lambda event: seen.append(event.subject))
        for subject in ("a", "b", "c"):
            outbox.publish(T0, "ping", subject=subject)
        assert outbox.dispatch() == 3
        assert seen == ["a", "b", "c"]
        assert outbox.pending_count() == 0

    def test_params_are_frozen(self):
        event = Outbox().publish(T0, "ping", params={"b": 2, "a": 1})
        assert event.params == (("a", 1), ("b", 2))
        assert event.params_dict == {"a": 1, "b": 2}

    def test_dedup_key_delivers_once(self):
        outbox = Outbox()
        seen = []
        outbox.register("ping", seen.append)
        outbox.publish(T0, "ping", dedup_key="s1")
        outbox.publish(T0, "ping", dedup_key="s1")
        assert outbox.dispatch() == 1
        outbox.publish(T0, "ping", dedup_key="s1")
        assert outbox.dispatch() == 0
        assert len(seen) == 1
        assert outbox.was_delivered("ping:s1")

    def test_events_without_dedup_key_are_distinct(self):
        outbox = Outbox()
        outbox.register("ping", lambda event: None)
        first = outbox.publish(T0, "ping")
        second = outbox.publish(T0, "ping")
        assert first.event_id != second.event_id
        assert outbox.dispatch() == 2

    def test_failure_is_parked_and_logged(self, caplog):
        outbox = Outbox()
        calls = []

        def flaky(event):
            calls.append(event.subject)
            if event.subject == "boom" and calls.count("boom") == 1:
                raise RuntimeError("mail server down")

        outbox.register("ping", flaky)
        outbox.publish(T0, "ping", subject="boom")
        outbox.publish(T0, "ping", subject="ok")
        with caplog.at_level(logging.ERROR, logger="slotledger.outbox"):
            assert outbox.dispatch() == 1
        assert "parked for retry" in caplog.text
        assert [e.subject for e in outbox.failed] == ["boom"]

        assert outbox.retry_failed() == 1
        assert outbox.failed == []
        assert calls == ["boom", "ok", "boom"]

    def test_missing_handler_is_dropped(self, caplog):
        outbox = Outbox()
        outbox.publish(T0, "unknown")
        with caplog.at_level(logging.WARNING, logger="slotledger.outbox"):
            assert outbox.dispatch() == 0
        assert "No handler registered" in caplog.text
        assert outbox.pending_count() == 0


class TestDefaultHandlers:
    """Handlers bound to the in-memory collaborators."""

    def test_notify(self):
        notifier = RecordingNotifier()
        outbox = create_default_outbox(notifier=notifier)
        outbox.publish(T0, ACTION_NOTIFY, "buyer", "slot_approved", {"slot_id": "s1", "message": "Approved"})
        outbox.dispatch()
        (user_id, notification), = notifier.sent
        assert user_id == "buyer"
        assert notification.subject == "slot_approved"
        assert notification.message == "Approved"
        assert notification.params == {"slot_id": "s1"}

    def test_rank_check(self):
        checker = RecordingRankChecker()
        outbox = create_default_outbox(rank_checker=checker)
        outbox.publish(
            T0, ACTION_RANK_CHECK,
            params={"slot_id": "s1", "keywords": ("shoes",), "keyword_id": None}, dedup_key="s1",
        )
        outbox.dispatch()
        assert checker.triggered == [("s1", ("shoes",), None)]

    def test_inquiry_thread(self):
        threads = InMemoryInquiryThreads(clock=lambda: T0)
        outbox = create_default_outbox(inquiry_threads=threads)
        params = {"buyer_id": "buyer", "seller_id": "seller", "campaign_id": "camp-1", "slot_id": "s1"}
        outbox.publish(T0, ACTION_INQUIRY_THREAD, params=params)
        outbox.publish(T0, ACTION_INQUIRY_THREAD, params=params)
        outbox.dispatch()
        assert len(threads.threads) == 1
        assert threads.find_open_thread("s1").created_at == T0

    def test_closed_thread_is_replaced(self):
        threads = InMemoryInquiryThreads(clock=lambda: T0)
        first = threads.ensure_inquiry_thread("buyer", "seller", "camp-1", "s1")
        threads.close(first)
        second = threads.ensure_inquiry_thread("buyer", "seller", "camp-1", "s1")
        assert second != first
        assert threads.find_open_thread("s1").thread_id == second

    def test_no_collaborators_no_handlers(self, caplog):
        outbox = create_default_outbox()
        outbox.publish(T0, ACTION_NOTIFY, "buyer", "x")
        with caplog.at_level(logging.WARNING, logger="slotledger.outbox"):
            assert outbox.dispatch() == 0
        assert caplog.records == []
        assert outbox.pending_count() == 0


class TestConcurrentPublish:
    """Several threads sharing one outbox."""

    def test_every_event_gets_its_own_sequence(self):
        outbox = Outbox()
        seen = []
        outbox.register("ping", seen.append)
        per_thread = 2000
        start = threading.Barrier(4)

        def publisher(name):
            start.wait()
            for i in range(per_thread):
                outbox.publish(T0, "ping", subject=f"{name}-{i}")

        workers = [threading.Thread(target=publisher, args=(f"t{n}",)) for n in range(4)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        assert outbox.dispatch() == 4 * per_thread
        assert len({event.sequence for event in seen}) == 4 * per_thread
        assert len({event.subject for event in seen}) == 4 * per_thread

    def test_publish_and_dispatch_interleaved(self):
        outbox = Outbox()
        seen = []
        outbox.register("ping", seen.append)
        done = threading.Event()

        def publisher():
            for i in range(3000):
                outbox.publish(T0, "ping", subject=str(i))
            done.set()

        worker = threading.Thread(target=publisher)
        worker.start()
        while not done.is_set():
            outbox.dispatch()
        worker.join()
        outbox.dispatch()

        assert [event.subject for event in seen] == [str(i) for i in range(3000)]
