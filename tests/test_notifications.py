"""Tests for notification sinks: inbox, webhook and fanout."""

import threading

import requests

import notifications
from notifications import (
    DatabaseNotificationSink,
    FanoutNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
)


class Exploding(NotificationSink):
    def notify(self, participant_id, event, payload):
        raise RuntimeError("channel down")


class Recording(NotificationSink):
    def __init__(self):
        self.seen = []

    def notify(self, participant_id, event, payload):
        self.seen.append((participant_id, event, payload))


class TestDatabaseSink:
    def test_inbox_and_mark_read(self, db):
        sink = DatabaseNotificationSink(db)
        sink.notify("agt_1", "payment_released", {"transaction_id": "txn_1"})
        sink.notify("agt_2", "dispute_filed", {})
        items = sink.inbox("agt_1")
        assert len(items) == 1
        assert items[0]["payload"] == {"transaction_id": "txn_1"}
        assert items[0]["is_read"] is False
        assert sink.mark_read("agt_1") == 1
        assert sink.inbox("agt_1", unread_only=True) == []


class TestFanout:
    def test_one_failing_sink_does_not_stop_others(self):
        recorder = Recording()
        FanoutNotificationSink(Exploding(), recorder).notify("agt_1", "evt", {"a": 1})
        assert recorder.seen == [("agt_1", "evt", {"a": 1})]


class TestWebhook:
    def test_posts_json(self, monkeypatch):
        sent = threading.Event()
        bodies = []

        class Resp:
            status_code = 204

        def fake_post(url, json=None, timeout=None):
            bodies.append((url, json))
            sent.set()
            return Resp()

        monkeypatch.setattr(notifications.requests, "post", fake_post)
        WebhookNotificationSink("https://hooks.example.com/bl").notify(
            "agt_1", "payment_released", {"transaction_id": "txn_1"})
        assert sent.wait(5)
        url, body = bodies[0]
        assert url == "https://hooks.example.com/bl"
        assert body["event"] == "payment_released"
        assert body["participant_id"] == "agt_1"

    def test_request_error_is_logged(self, monkeypatch):
        done = threading.Event()

        def fake_post(url, json=None, timeout=None):
            done.set()
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(notifications.requests, "post", fake_post)
        WebhookNotificationSink("https://hooks.example.com/bl").notify("agt_1", "evt", {})
        assert done.wait(5)

    def test_no_url_is_noop(self, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError("posted without a URL")

        monkeypatch.setattr(notifications.requests, "post", fail)
        WebhookNotificationSink("").notify("agt_1", "evt", {})
