"""
Event Translator

Classifies raw watch notifications. A notification whose object carries the
CertificateSigningRequest kind tag and validates as a ``SigningRequest`` is
delivered; anything else (API Status errors, bookmarks, undecodable lines,
foreign kinds) is skipped with a diagnostic that keeps the original event.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from pydantic import ValidationError

from gatekeeper.errors import MalformedEventDiagnostic
from gatekeeper.models import SIGNING_REQUEST_KIND, SigningRequest

DELETED = "DELETED"


@dataclass
class Delivered:
    request: SigningRequest
    event_type: str = ""


@dataclass
class Skipped:
    diagnostic: MalformedEventDiagnostic


Outcome = Union[Delivered, Skipped]


def translate(raw_event: Any) -> Outcome:
    """Decode one raw watch event into a delivered request or a skip."""
    if not isinstance(raw_event, Mapping):
        return _skip(raw_event, f"event is not an object ({type(raw_event).__name__})")

    obj = raw_event.get("object")
    if not isinstance(obj, Mapping):
        return _skip(raw_event, "event has no object payload")

    kind = obj.get("kind")
    if kind != SIGNING_REQUEST_KIND:
        return _skip(raw_event, f"unexpected object kind {kind!r}")

    try:
        request = SigningRequest.model_validate(dict(obj))
    except ValidationError as exc:
        return _skip(raw_event, f"invalid {SIGNING_REQUEST_KIND}: {exc.error_count()} error(s)")

    return Delivered(request=request, event_type=str(raw_event.get("type", "")))


def _skip(raw_event: Any, reason: str) -> Skipped:
    return Skipped(MalformedEventDiagnostic(event=raw_event, reason=reason))
