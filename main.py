"""
CSR Gatekeeper Gateway
API Reference: certificates.k8s.io/v1, approval subresource

Operator-facing entry point for the "user activation" decision policy.
A watch keeps an inbox of undecided signing requests; an authenticated
human operator approves or denies them by name. Every decision is a
single conditional write to the API server and is never retried here.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from gatekeeper.approval import ApprovalProtocol
from gatekeeper.errors import TransportError, UpdateConflictError
from gatekeeper.identity import Operator, authenticate_operator
from gatekeeper.inbox import PendingInbox
from gatekeeper.kube import RequestStoreClient, connect
from gatekeeper.models import ConditionType
from gatekeeper.watch import WatchRegistry

KUBE_HOST = os.environ.get("KUBE_HOST", "https://kubernetes.default.svc")
KUBE_TOKEN_FILE = os.environ.get(
    "KUBE_TOKEN_FILE", "/var/run/secrets/kubernetes.io/serviceaccount/token"
)
OPERATOR_KEY_FINGERPRINT = os.environ.get("OPERATOR_KEY_FINGERPRINT", "")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class PendingRequest(BaseModel):
    name: str
    signer_name: str = ""
    username: str = ""


class DecisionResponse(BaseModel):
    name: str
    decision: str
    decided_by: str
    decided_at: str
    message: str


# ---------------------------------------------------------------------------
# Operator authentication helper
# ---------------------------------------------------------------------------

def _authenticate_operator_request(authorization: str, key_fingerprint: str) -> Operator:
    """Extract Bearer token and resolve it to the operator.

    Raises HTTPException on auth failure.
    """
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Bearer token.")

    token = authorization[len("Bearer "):]
    try:
        return authenticate_operator(token, key_fingerprint)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc))


def _decide(request: Request, name: str, decision: ConditionType, operator: Operator):
    """
    Shared approve/deny flow.

    Flow:
      1. Take the request out of the pending inbox (404 if absent).
      2. Append the decision condition and submit it.
      3. On a transport failure, put the unmodified request back; on a
         conflict, drop it until the watch delivers the current version.
    """
    state = request.app.state
    csr = state.inbox.take(name)
    if csr is None:
        raise HTTPException(
            status_code=404,
            detail=f"Signing request {name} is not pending.",
        )

    snapshot = csr.model_copy(deep=True)
    decide = state.protocol.approve if decision == ConditionType.APPROVED else state.protocol.deny

    try:
        decide(csr)
    except UpdateConflictError as exc:
        return JSONResponse(
            status_code=409,
            content={
                "error": str(exc),
                "name": name,
                "message": "Signing request changed since it was read; "
                           "it will reappear once the watch delivers the update.",
            },
        )
    except TransportError as exc:
        state.inbox.restore(snapshot)
        return JSONResponse(
            status_code=502,
            content={"error": str(exc), "name": name},
        )

    return JSONResponse(
        status_code=200,
        content=DecisionResponse(
            name=name,
            decision=decision.value,
            decided_by=operator.operator_id,
            decided_at=datetime.now(timezone.utc).isoformat(),
            message=f"Signing request {decision.value.lower()} by operator.",
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

def create_app(
    store: Optional[RequestStoreClient] = None,
    key_fingerprint: Optional[str] = None,
) -> FastAPI:
    """Build the gateway. Without *store*, connects using KUBE_HOST/KUBE_TOKEN_FILE."""
    fingerprint = key_fingerprint if key_fingerprint is not None else OPERATOR_KEY_FINGERPRINT

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = store if store is not None else connect(KUBE_HOST, KUBE_TOKEN_FILE)
        registry = WatchRegistry(client)
        inbox = PendingInbox(registry)
        inbox.start()

        app.state.registry = registry
        app.state.protocol = ApprovalProtocol(client)
        app.state.inbox = inbox
        try:
            yield
        finally:
            registry.stop_all()
            if store is None:
                client.close()

    app = FastAPI(
        title="CSR Gatekeeper Gateway",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.get("/health")
    def health(request: Request):
        """Operational while the inbox is consuming a watch; 503 once it has stopped."""
        inbox = request.app.state.inbox
        body = {
            "status": "operational",
            "service": "csr-gatekeeper",
            "watches": request.app.state.registry.session_count(),
        }
        if inbox.running:
            return body
        body["status"] = "degraded"
        body["error"] = str(inbox.error) if inbox.error is not None else "inbox watch stopped"
        return JSONResponse(status_code=503, content=body)

    @app.get("/pending")
    def pending(request: Request):
        """List signing requests still awaiting a decision."""
        items = [
            PendingRequest(
                name=csr.name,
                signer_name=csr.spec.get("signerName", ""),
                username=csr.spec.get("username", ""),
            ).model_dump()
            for csr in request.app.state.inbox.pending()
        ]
        return {"pending": sorted(items, key=lambda item: item["name"])}

    @app.post("/approve/{name}")
    def approve(name: str, request: Request, authorization: str = Header(...)):
        """Approve a pending signing request on behalf of the operator."""
        operator = _authenticate_operator_request(authorization, fingerprint)
        return _decide(request, name, ConditionType.APPROVED, operator)

    @app.post("/deny/{name}")
    def deny(name: str, request: Request, authorization: str = Header(...)):
        """Deny a pending signing request on behalf of the operator."""
        operator = _authenticate_operator_request(authorization, fingerprint)
        return _decide(request, name, ConditionType.DENIED, operator)

    return app


app = create_app()
