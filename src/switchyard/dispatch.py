"""
Best-effort side calls (analytics, notifications).

Submitting never blocks the request thread and a failing sink never
affects a routing decision: work is queued and drained by one daemon
worker, and every error is logged and dropped.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import queue
import threading
from typing import Any, Callable, Optional

import httpx


logger = logging.getLogger(__name__)

_STOP = object()


class BestEffortDispatcher:
    def __init__(self, maxsize: int = 1000, name: str = "switchyard-dispatch"):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._name = name
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
            self._thread.start()

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        """Queue ``fn(*args, **kwargs)``. Returns False if the queue is full."""
        self.start()
        try:
            self._queue.put_nowait((fn, args, kwargs))
        except queue.Full:
            logger.warning("Dispatch queue full; dropping %s", getattr(fn, "__name__", fn))
            return False
        return True

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                fn, args, kwargs = item
                try:
                    fn(*args, **kwargs)
                except Exception:
                    logger.exception("Best-effort dispatch of %s failed", getattr(fn, "__name__", fn))
            finally:
                self._queue.task_done()

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until everything queued so far has run. For tests and shutdown."""
        if self._thread is None:
            return
        if timeout is None:
            self._queue.join()
            return
        done = threading.Event()

        def _wait() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        done.wait(timeout)

    def stop(self, timeout: float = 1.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout=timeout)


class AnalyticsSink:
    """POSTs event summaries to an external analytics endpoint, optionally signed."""

    def __init__(
        self,
        url: str,
        secret: Optional[str] = None,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self._secret = secret
        self._http = client or httpx.Client(timeout=timeout_seconds)

    def _sign(self, body: str) -> str:
        assert self._secret is not None
        return hmac.new(self._secret.encode(), body.encode(), hashlib.sha256).hexdigest()

    def send(self, payload: dict) -> None:
        body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers["X-Switchyard-Signature"] = f"sha256={self._sign(body)}"
        resp = self._http.post(self.url, content=body, headers=headers)
        resp.raise_for_status()
