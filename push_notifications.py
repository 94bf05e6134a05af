from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable
import json
import logging
import queue
import threading
import urllib.error
import urllib.request


logger = logging.getLogger("coupleswipe.push")


EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
MATCH_PUSH_TITLE = "New Match!"


class PushDeliveryError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class PushJob:
    push_address: str
    body: str
    title: str = MATCH_PUSH_TITLE
    data: dict[str, Any] = field(default_factory=dict)


class ExpoPushService:
    """Fire-and-forget push delivery.

    Callers enqueue jobs and return immediately; a background thread posts
    them to the Expo push endpoint and logs the outcome. Failed jobs are not
    retried.
    """

    def __init__(
        self,
        *,
        enabled: bool,
        push_url: str = EXPO_PUSH_URL,
        timeout_seconds: float = 10,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        self.enabled = bool(enabled)
        self.push_url = (push_url or EXPO_PUSH_URL).strip()
        self.timeout_seconds = max(float(timeout_seconds), 1.0)
        self.poll_interval_seconds = max(float(poll_interval_seconds), 0.05)
        self._queue: queue.Queue[PushJob] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._sender: Callable[[dict[str, Any]], Any] = self._send_with_expo

    def set_sender_for_tests(self, sender: Callable[[dict[str, Any]], Any]) -> None:
        self._sender = sender

    def start_worker(self) -> None:
        if not self.enabled:
            return
        with self._state_lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._worker_loop, name="push-delivery-worker", daemon=True)
            self._thread.start()
        logger.info("push_worker_started url=%s", self.push_url)

    def stop_worker(self) -> None:
        self._stop_event.set()
        with self._state_lock:
            thread = self._thread
            self._thread = None
        if thread and thread.is_alive():
            thread.join(timeout=3)

    def enqueue(self, job: PushJob) -> bool:
        if not self.enabled:
            logger.info("push_skip disabled to=%s", job.push_address)
            return False
        if not (job.push_address or "").strip():
            logger.info("push_skip no_push_address")
            return False
        if self._thread is None:
            logger.warning("push_worker_not_running pending=%s", self._queue.qsize() + 1)
        self._queue.put(job)
        logger.info("push_enqueued to=%s pending=%s", job.push_address, self._queue.qsize())
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    def process_pending(self) -> dict[str, int]:
        """Drain the queue on the calling thread."""
        stats = {"sent": 0, "failed": 0}
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                return stats
            try:
                if self._deliver(job):
                    stats["sent"] += 1
                else:
                    stats["failed"] += 1
            finally:
                self._queue.task_done()

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self._queue.get(timeout=self.poll_interval_seconds)
            except queue.Empty:
                continue
            try:
                self._deliver(job)
            except Exception:
                logger.exception("push_worker_iteration_failed")
            finally:
                self._queue.task_done()

    def _deliver(self, job: PushJob) -> bool:
        message = self._build_message(job)
        try:
            response = self._sender(message)
        except PushDeliveryError as exc:
            logger.error("push_failed to=%s status=%s reason=%s", job.push_address, exc.status_code, exc)
            return False
        except Exception:
            logger.exception("push_failed to=%s", job.push_address)
            return False
        logger.info("push_sent to=%s response=%s", job.push_address, response)
        return True

    @staticmethod
    def _build_message(job: PushJob) -> dict[str, Any]:
        return {
            "to": job.push_address,
            "sound": "default",
            "title": job.title,
            "body": job.body,
            "data": dict(job.data),
        }

    def _send_with_expo(self, message: dict[str, Any]) -> Any:
        req = urllib.request.Request(
            self.push_url,
            data=json.dumps(message, ensure_ascii=False).encode("utf-8"),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise PushDeliveryError(f"expo_http_{exc.code}", status_code=exc.code) from exc
        except (urllib.error.URLError, OSError) as exc:
            raise PushDeliveryError(str(exc) or "expo_unreachable") from exc
        try:
            return json.loads(raw) if raw else {}
        except ValueError:
            return {"raw": raw}
