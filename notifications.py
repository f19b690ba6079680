# Bountyline Notifications
# Fire and forget. A failing sink is logged, never raised into escrow.
#
# Events: listing_claimed, listing_purchased, proposal_received,
# proposal_accepted, payment_received, delivery_received, payment_released,
# dispute_filed, dispute_resolved, refund_issued, review_received

import json
import logging
import os
import threading
import time
import uuid
from typing import Optional

import requests

from db import DatabaseOps, MarketDatabase, get_engine

log = logging.getLogger("bountyline.notify")

WEBHOOK_URL = os.environ.get("BOUNTYLINE_NOTIFY_WEBHOOK_URL", "")
WEBHOOK_TIMEOUT_SEC = 10


class NotificationSink:
    def notify(self, participant_id: str, event: str, payload: dict):
        raise NotImplementedError


class NullNotificationSink(NotificationSink):
    def notify(self, participant_id, event, payload):
        log.debug("NOTIFY (no channels) %s -> %s", event, participant_id)


class DatabaseNotificationSink(NotificationSink):
    """In-app inbox stored in the marketplace database."""

    def __init__(self, db: Optional[MarketDatabase] = None):
        self.db = db or get_engine()

    def notify(self, participant_id, event, payload):
        try:
            with self.db.transaction() as (conn, backend):
                DatabaseOps.execute(
                    conn, backend,
                    """INSERT INTO notifications
                       (notification_id, participant_id, event, payload, created_at, is_read)
                       VALUES (?, ?, ?, ?, ?, 0)""",
                    (f"ntf_{uuid.uuid4().hex[:16]}", participant_id, event,
                     json.dumps(payload, default=str), time.time()),
                )
        except Exception as e:
            log.error("NOTIFY FAILED: %s -> %s | %s", event, participant_id, e)

    def inbox(self, participant_id: str, unread_only: bool = False,
              limit: int = 50) -> list[dict]:
        where = "participant_id = ?"
        if unread_only:
            where += " AND is_read = 0"
        with self.db.connection() as (conn, backend):
            rows = DatabaseOps.fetchall(
                conn, backend,
                f"SELECT * FROM notifications WHERE {where} "
                "ORDER BY created_at DESC LIMIT ?",
                (participant_id, limit),
            )
        for r in rows:
            r["payload"] = DatabaseOps.decode_payload(r["payload"]) or {}
            r["is_read"] = bool(r["is_read"])
        return rows

    def mark_read(self, participant_id: str) -> int:
        with self.db.transaction() as (conn, backend):
            cur = DatabaseOps.execute(
                conn, backend,
                "UPDATE notifications SET is_read = 1 "
                "WHERE participant_id = ? AND is_read = 0",
                (participant_id,),
            )
            return cur.rowcount


class WebhookNotificationSink(NotificationSink):
    """POSTs each notification as JSON on a daemon thread."""

    def __init__(self, url: str = WEBHOOK_URL, timeout: float = WEBHOOK_TIMEOUT_SEC):
        self.url = url
        self.timeout = timeout

    def _send(self, body: dict):
        try:
            resp = requests.post(self.url, json=body, timeout=self.timeout)
            if resp.status_code >= 400:
                log.warning("WEBHOOK %s returned HTTP %d", body["event"], resp.status_code)
        except requests.RequestException as e:
            log.error("WEBHOOK FAILED: %s | %s", body["event"], e)

    def notify(self, participant_id, event, payload):
        if not self.url:
            return
        body = {"participant_id": participant_id, "event": event,
                "payload": payload, "timestamp": time.time()}
        threading.Thread(target=self._send, args=(body,), daemon=True).start()


class FanoutNotificationSink(NotificationSink):
    def __init__(self, *sinks: NotificationSink):
        self.sinks = list(sinks)

    def notify(self, participant_id, event, payload):
        for sink in self.sinks:
            try:
                sink.notify(participant_id, event, payload)
            except Exception as e:
                log.error("NOTIFY FAILED (%s): %s -> %s | %s",
                          type(sink).__name__, event, participant_id, e)


_sink: Optional[NotificationSink] = None


def get_notification_sink() -> NotificationSink:
    global _sink
    if _sink is None:
        sinks = [DatabaseNotificationSink()]
        if WEBHOOK_URL:
            sinks.append(WebhookNotificationSink(WEBHOOK_URL))
        _sink = FanoutNotificationSink(*sinks)
    return _sink
