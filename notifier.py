"""
Trade Event Notifier
====================
- Non-blocking publisher for engine events (entry / exit / report)
- Bounded queue drained by a daemon thread; the engine never waits on I/O
- Optional webhook delivery (JSON POST) and JSON-lines trade history
- A full queue drops the event and returns False

Version: 1.0.0
"""

import json
import logging
import queue
import threading
import time
from typing import Any, Dict, Optional

import requests

import config

logger = logging.getLogger(__name__)

_STOP = object()


class Notifier:
    """
    Queue-backed event sink.

        notifier = Notifier(webhook_url=config.WEBHOOK_URL,
                            history_file=config.TRADE_HISTORY_FILE)
        engine = PatternMetaStrategy(settings, publisher=notifier)
    """

    def __init__(self, webhook_url: str = "", history_file: str = "",
                 queue_size: int = config.PUBLISH_QUEUE_SIZE,
                 timeout: float = config.WEBHOOK_TIMEOUT_SEC):
        self.webhook_url = webhook_url
        self.history_file = history_file
        self.timeout = timeout

        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self.published = 0
        self.dropped = 0
        self.delivered = 0
        self.failed = 0

        self._thread = threading.Thread(
            target=self._worker, name="event-publisher", daemon=True)
        self._thread.start()

    # ========================================================================
    # PRODUCER SIDE
    # ========================================================================

    def publish(self, kind: str, payload: Dict[str, Any]) -> bool:
        """Enqueue an event. Non-blocking. Returns False if the queue is full."""
        event = {"kind": kind, "published_at": time.time(), **payload}
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning(f"⚠️ Publish queue full - {kind} event dropped")
            return False
        self.published += 1
        return True

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued event has been handled."""
        deadline = None if timeout is None else time.time() + timeout
        while self._queue.unfinished_tasks:
            if deadline is not None and time.time() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self.flush(timeout)
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("⚠️ Publisher did not drain before stop")
            return
        self._thread.join(timeout)

    # ========================================================================
    # WORKER
    # ========================================================================

    def _worker(self) -> None:
        while True:
            try:
                event = self._queue.get(timeout=2.0)
            except queue.Empty:
                continue

            try:
                if event is _STOP:
                    return
                self._deliver(event)
            except Exception as e:
                self.failed += 1
                logger.error(f"❌ Error publishing {event.get('kind')} event: {e}")
            finally:
                self._queue.task_done()

    def _deliver(self, event: Dict[str, Any]) -> None:
        if self.history_file and event.get("kind") == "exit":
            with open(self.history_file, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(event.get("trade", event), default=str) + "\n")

        if self.webhook_url:
            resp = requests.post(self.webhook_url, json=event, timeout=self.timeout)
            if resp.status_code >= 300:
                self.failed += 1
                logger.warning(
                    f"Webhook send failed: {resp.status_code} - {resp.text[:200]}")
                return

        self.delivered += 1

    def get_stats(self) -> Dict[str, int]:
        return {
            "published": self.published,
            "delivered": self.delivered,
            "dropped": self.dropped,
            "failed": self.failed,
            "queued": self._queue.qsize(),
        }
