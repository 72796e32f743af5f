"""
Pending Inbox

Consumes one watch stream in a background thread and keeps the latest
undecided version of each signing request, keyed by name. The operator
gateway decides requests out of this inbox.

The API server ends watches on its own schedule. When that happens the
inbox opens a fresh watch through the registry and rebuilds its view from
the ADDED events that follow. A watch that fails, or a re-open that is
refused, stops the inbox and leaves the cause in ``error``.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Optional

from gatekeeper.errors import SubscriptionError
from gatekeeper.models import SigningRequest
from gatekeeper.translator import DELETED
from gatekeeper.watch import SigningRequestStream, WatchRegistry

_log = logging.getLogger(__name__)

WATCH_REOPEN_DELAY_SECONDS = float(
    os.environ.get("WATCH_REOPEN_DELAY_SECONDS", "1")
)


class PendingInbox:
    def __init__(self, registry: WatchRegistry):
        self._registry = registry
        self._lock = threading.Lock()
        self._pending: dict[str, SigningRequest] = {}
        self._stream: Optional[SigningRequestStream] = None
        self._thread: Optional[threading.Thread] = None
        self.error: Optional[Exception] = None

    def start(self) -> None:
        """Open a watch and start consuming it. Raises SubscriptionError."""
        self._stream = self._registry.open_watch()
        self._thread = threading.Thread(
            target=self._consume,
            args=(self._stream,),
            name="csr-inbox",
            daemon=True,
        )
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _consume(self, stream: SigningRequestStream) -> None:
        while True:
            try:
                for event in stream.events():
                    self.offer(event.request, event.event_type)
            except Exception as exc:
                _log.error("inbox watch ended with error: %s", exc)
                self.error = exc
                return

            if stream.cancelled or self._registry.stopped:
                return

            _log.info("watch ended by the API server; re-opening")
            time.sleep(WATCH_REOPEN_DELAY_SECONDS)
            try:
                stream = self._registry.open_watch()
            except SubscriptionError as exc:
                if self._registry.stopped:
                    return
                _log.error("could not re-open inbox watch: %s", exc)
                self.error = exc
                return
            self._stream = stream
            # The new watch replays every current request as ADDED.
            with self._lock:
                self._pending.clear()

    def offer(self, request: SigningRequest, event_type: str = "") -> None:
        """Record *request*, or forget it if it was deleted or already decided."""
        with self._lock:
            if event_type == DELETED or request.is_decided():
                self._pending.pop(request.name, None)
            else:
                self._pending[request.name] = request

    def pending(self) -> list[SigningRequest]:
        with self._lock:
            return list(self._pending.values())

    def get(self, name: str) -> Optional[SigningRequest]:
        with self._lock:
            return self._pending.get(name)

    def take(self, name: str) -> Optional[SigningRequest]:
        """Remove and return the pending request called *name*."""
        with self._lock:
            return self._pending.pop(name, None)

    def restore(self, request: SigningRequest) -> None:
        """Put back a request whose decision failed, unless a newer one arrived."""
        with self._lock:
            self._pending.setdefault(request.name, request)
