"""
Gatekeeper Errors

Failure taxonomy shared by the watch registry, the approval protocol and the
request-store client. Malformed watch events are not errors: they are
reported as ``MalformedEventDiagnostic`` values and the stream continues.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


class GatekeeperError(Exception):
    """Base class for every error raised by the gatekeeper package."""


class SubscriptionError(GatekeeperError):
    """A watch on signing requests could not be established."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpdateConflictError(GatekeeperError):
    """The request changed remotely since it was read; the update was rejected."""

    def __init__(self, name: str, detail: str = ""):
        message = f"Conflicting update for signing request {name}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.name = name
        self.detail = detail


class TransportError(GatekeeperError):
    """Network, auth or HTTP failure talking to the request store."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class MalformedEventDiagnostic:
    """A watch event that did not decode as a signing request."""
    event: Any
    reason: str
