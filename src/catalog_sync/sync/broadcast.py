"""Best-effort progress broadcasting for sync runs."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Mapping
from typing import Any, Protocol

import httpx

from catalog_sync.storage.common import utc_now
from catalog_sync.sync.models import SyncProgress

logger = logging.getLogger(__name__)

Payload = Mapping[str, Any]

DEFAULT_WEBHOOK_QUEUE_SIZE = 1000
_SENTINEL = object()


class ProgressBroadcaster(Protocol):
    """Push channel for live run updates."""

    def publish(self, channel: str, payload: Payload) -> None:
        """Send one message; may raise, callers treat it as best effort."""
        raise NotImplementedError


def sync_channel_id(store_id: str) -> str:
    return f"{store_id}_scan"


def progress_payload(run_id: str, progress: SyncProgress) -> dict[str, Any]:
    return {
        "type": "sync_progress",
        "run_id": run_id,
        "total": progress.total,
        "processed": progress.processed,
        "percentage": progress.percentage,
        "timestamp": utc_now().isoformat(),
    }


def status_payload(run_id: str, status: str, **details: Any) -> dict[str, Any]:
    return {
        "type": "sync_status",
        "run_id": run_id,
        "status": status,
        **details,
        "timestamp": utc_now().isoformat(),
    }


def error_payload(run_id: str, message: str) -> dict[str, Any]:
    return {
        "type": "error",
        "run_id": run_id,
        "error": message,
        "timestamp": utc_now().isoformat(),
    }


class LoggingBroadcaster:
    """Write every message to the log; the default when nothing else is configured."""

    def publish(self, channel: str, payload: Payload) -> None:
        logger.info("[%s] %s", channel, dict(payload))


class CallbackBroadcaster:
    """Forward messages to a plain callable (tests, embedding applications)."""

    def __init__(self, callback: Callable[[str, Payload], None]) -> None:
        self.callback = callback

    def publish(self, channel: str, payload: Payload) -> None:
        self.callback(channel, payload)


class WebhookBroadcaster:
    """POST each message as JSON to ``{base_url}/{channel}`` from one sender thread.

    ``publish`` only enqueues, so a slow endpoint never holds up pool workers.
    When the queue is full the message is dropped with a warning. ``close``
    delivers what is already queued, then stops the sender.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 5.0,
        max_queue_size: int = DEFAULT_WEBHOOK_QUEUE_SIZE,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._queue: queue.Queue[tuple[str, dict[str, Any]] | object] = queue.Queue(
            maxsize=max_queue_size,
        )
        self._closed = False
        self._sender = threading.Thread(
            target=self._drain,
            name="catalog-sync-webhook",
            daemon=True,
        )
        self._sender.start()

    def publish(self, channel: str, payload: Payload) -> None:
        if self._closed:
            raise RuntimeError("Webhook broadcaster is closed")
        try:
            self._queue.put_nowait((channel, dict(payload)))
        except queue.Full:
            logger.warning("Webhook queue full, dropping %s message for %s", payload.get("type"), channel)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(_SENTINEL)
        self._sender.join()
        self._client.close()

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if item is _SENTINEL:
                return
            channel, payload = item  # type: ignore[misc]
            try:
                response = self._client.post(f"{self.base_url}/{channel}", json=payload)
                response.raise_for_status()
            except httpx.HTTPError:
                logger.warning(
                    "Webhook delivery to %s failed (type=%s)",
                    channel,
                    payload.get("type"),
                    exc_info=True,
                )


class RunBroadcaster:
    """Run-bound wrapper the pipeline talks to; never raises.

    Messages go to the store channel and every payload carries the run id.
    """

    def __init__(self, broadcaster: ProgressBroadcaster | None, store_id: str, run_id: str) -> None:
        self._broadcaster = broadcaster
        self.channel = sync_channel_id(store_id)
        self.run_id = run_id

    def progress(self, progress: SyncProgress) -> None:
        self._send(progress_payload(self.run_id, progress))

    def status(self, status: str, **details: Any) -> None:
        self._send(status_payload(self.run_id, status, **details))

    def error(self, message: str) -> None:
        self._send(error_payload(self.run_id, message))
        self._send(status_payload(self.run_id, "failed", error=message))

    def _send(self, payload: dict[str, Any]) -> None:
        if self._broadcaster is None:
            return
        try:
            self._broadcaster.publish(self.channel, payload)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Progress broadcast to %s failed (type=%s)",
                self.channel,
                payload.get("type"),
                exc_info=True,
            )
