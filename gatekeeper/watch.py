"""
Watch Sessions and Registry

A ``WatchRegistry`` belongs to one controller instance and owns every watch
session it opens. Each session runs one translation thread that pulls raw
events from its subscription, decodes them, and hands signing requests to a
``SigningRequestStream`` the policy loop reads from.

The registry lock guards the session list only. Subscriptions are opened
and events are translated without holding it.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from typing import Any, Callable, Iterator, Optional

from gatekeeper.errors import MalformedEventDiagnostic, SubscriptionError
from gatekeeper.kube import RequestStoreClient, Subscription
from gatekeeper.models import SigningRequest
from gatekeeper.translator import Delivered, translate

_log = logging.getLogger(__name__)

DiagnosticsHandler = Callable[[MalformedEventDiagnostic], None]

_END = object()
_session_ids = itertools.count(1)


class _Failure:
    """Queued error raised to the consumer in place of the next item."""

    def __init__(self, error: BaseException):
        self.error = error


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class WatchSession:
    """One live subscription plus the thread translating its events."""

    def __init__(
        self,
        subscription: Subscription,
        diagnostics: Optional[DiagnosticsHandler] = None,
        on_finished: Optional[Callable[[WatchSession], None]] = None,
    ):
        self.session_id = next(_session_ids)
        self._subscription = subscription
        self._diagnostics = diagnostics
        self._on_finished = on_finished
        self._queue: queue.Queue[Any] = queue.Queue()
        self._cancelled = threading.Event()
        self._finished = threading.Event()
        self._cancel_lock = threading.Lock()
        self._thread = threading.Thread(
            target=self._pump,
            name=f"csr-watch-{self.session_id}",
            daemon=True,
        )
        self.stream = SigningRequestStream(self)

    def start(self) -> None:
        self._thread.start()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def cancel(self) -> None:
        """Stop the subscription and close the stream. Safe to call repeatedly."""
        with self._cancel_lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
        _log.info("cancelling watch session %d", self.session_id)
        self._subscription.close()
        # Wake a consumer blocked on an empty queue.
        self._queue.put(_END)

    def wait_finished(self, timeout: Optional[float] = None) -> bool:
        return self._finished.wait(timeout)

    def next_item(self) -> Any:
        """Block for the next queued request, failure or end marker."""
        return self._queue.get()

    def _pump(self) -> None:
        try:
            for raw_event in self._subscription:
                if self._cancelled.is_set():
                    break
                outcome = translate(raw_event)
                if isinstance(outcome, Delivered):
                    self._queue.put(outcome)
                else:
                    self._report(outcome.diagnostic)
        except Exception as exc:
            if not self._cancelled.is_set():
                _log.error("watch session %d failed: %s", self.session_id, exc)
                self._queue.put(_Failure(exc))
        finally:
            if self._on_finished is not None:
                self._on_finished(self)
            self._queue.put(_END)
            self._finished.set()

    def _report(self, diagnostic: MalformedEventDiagnostic) -> None:
        _log.warning(
            "dropping malformed watch event on session %d: %s (%r)",
            self.session_id,
            diagnostic.reason,
            diagnostic.event,
        )
        if self._diagnostics is not None:
            self._diagnostics(diagnostic)


# ---------------------------------------------------------------------------
# Consumer-facing stream
# ---------------------------------------------------------------------------

class SigningRequestStream:
    """
    Read side of a watch session.

    Iterating yields signing requests in the order the subscription produced
    them and stops when the session ends. A transport failure mid-watch is
    raised from the iterator after the requests received before it. Once the
    session is cancelled no further requests are yielded, even ones already
    queued.
    """

    def __init__(self, session: WatchSession):
        self._session = session
        self._done = False

    def __iter__(self) -> Iterator[SigningRequest]:
        return self

    def __next__(self) -> SigningRequest:
        return self._take().request

    def events(self) -> Iterator[Delivered]:
        """Like iterating the stream, but keeps each request's event type."""
        while True:
            try:
                event = self._take()
            except StopIteration:
                return
            yield event

    def _take(self) -> Delivered:
        if self._done or self._session.cancelled:
            self._done = True
            raise StopIteration
        item = self._session.next_item()
        if item is _END or self._session.cancelled:
            self._done = True
            raise StopIteration
        if isinstance(item, _Failure):
            self._done = True
            raise item.error
        return item

    @property
    def closed(self) -> bool:
        return self._done or self._session.cancelled or self._session.finished

    @property
    def cancelled(self) -> bool:
        """True when the stream was closed by its consumer or by ``stop_all``."""
        return self._session.cancelled

    def close(self) -> None:
        """Discard the stream, cancelling its session."""
        self._session.cancel()

    def wait_closed(self, timeout: Optional[float] = None) -> bool:
        """Block until the translation thread has exited."""
        return self._session.wait_finished(timeout)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class WatchRegistry:
    """
    Owns every watch session opened for one controller instance.

    ``stop_all`` cancels each registered session exactly once. After it has
    run the registry is stopped: a watch that finishes opening afterwards is
    closed straight away and ``open_watch`` raises SubscriptionError.
    A session removes itself once its translation thread exits, whether it
    was cancelled or its subscription ended.
    """

    def __init__(
        self,
        store: RequestStoreClient,
        diagnostics: Optional[DiagnosticsHandler] = None,
    ):
        self._store = store
        self._diagnostics = diagnostics
        self._lock = threading.Lock()
        self._sessions: list[WatchSession] = []
        self._stopped = False

    @property
    def stopped(self) -> bool:
        with self._lock:
            return self._stopped

    def open_watch(self) -> SigningRequestStream:
        """Open a watch and return its stream. Raises SubscriptionError."""
        if self.stopped:
            raise SubscriptionError("Watch registry is stopped")

        subscription = self._store.watch_signing_requests()
        session = WatchSession(
            subscription,
            diagnostics=self._diagnostics,
            on_finished=self._discard,
        )

        with self._lock:
            registered = not self._stopped
            if registered:
                self._sessions.append(session)

        if not registered:
            subscription.close()
            raise SubscriptionError("Watch registry stopped while the watch was opening")

        session.start()
        _log.info("watch session %d started", session.session_id)
        return session.stream

    def stop_all(self) -> None:
        """Cancel every registered session. Does not wait for threads to exit."""
        with self._lock:
            self._stopped = True
            sessions, self._sessions = self._sessions, []
            for session in sessions:
                session.cancel()
        if sessions:
            _log.info("stopped %d watch session(s)", len(sessions))

    def session_count(self) -> int:
        """Number of registered sessions. A session leaves the registry when its thread exits."""
        with self._lock:
            return len(self._sessions)

    def _discard(self, session: WatchSession) -> None:
        # Runs on the session's own thread, never under stop_all's lock.
        with self._lock:
            if session in self._sessions:
                self._sessions.remove(session)
