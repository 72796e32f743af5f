"""
Approval Protocol

Records an approve or deny decision on a signing request by appending one
condition to its status and writing it to the approval subresource.

No retries: a conflicting concurrent update is raised to the caller as
UpdateConflictError. Retrying with a stale object could duplicate or
overwrite another actor's conditions, so re-fetching is left to policy code.
"""

from __future__ import annotations

import logging
from typing import Optional

from gatekeeper.kube import RequestStoreClient
from gatekeeper.models import (
    CONDITION_TRUE,
    Condition,
    ConditionType,
    SigningRequest,
    now_timestamp,
)

_log = logging.getLogger(__name__)

DECISION_REASON = "User activation"

DECISION_MESSAGES: dict[ConditionType, str] = {
    ConditionType.APPROVED: "This CSR was approved",
    ConditionType.DENIED: "This CSR was denied by kubectl certificate deny",
}


def build_decision_condition(decision: ConditionType) -> Condition:
    """Build the single condition a decision appends."""
    if decision not in DECISION_MESSAGES:
        raise ValueError(f"Not a decision condition: {decision.value}")
    return Condition(
        type=decision.value,
        status=CONDITION_TRUE,
        reason=DECISION_REASON,
        message=DECISION_MESSAGES[decision],
        last_update_time=now_timestamp(),
    )


class ApprovalProtocol:
    """
    Approve/deny primitives for policy code.

    Both operations mutate the request passed in. Callers must not reuse a
    decided object for a second decision without re-fetching it.
    """

    def __init__(self, store: RequestStoreClient):
        self._store = store

    def approve(
        self,
        request: SigningRequest,
        timeout: Optional[float] = None,
    ) -> SigningRequest:
        """Append an Approved condition and submit it.

        Raises UpdateConflictError or TransportError from the store.
        """
        return self._decide(request, ConditionType.APPROVED, timeout)

    def deny(
        self,
        request: SigningRequest,
        timeout: Optional[float] = None,
    ) -> SigningRequest:
        """Append a Denied condition and submit it."""
        return self._decide(request, ConditionType.DENIED, timeout)

    def _decide(
        self,
        request: SigningRequest,
        decision: ConditionType,
        timeout: Optional[float],
    ) -> SigningRequest:
        request.status.conditions.append(build_decision_condition(decision))
        updated = self._store.submit_approval_update(
            request.name, request, timeout=timeout,
        )
        _log.info("signing request %s: %s", request.name, decision.value)
        return updated
