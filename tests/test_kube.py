"""
Kubernetes Client Test Suite
Watch streaming, approval updates and bootstrap against a mocked API server.

Usage:  pytest tests/test_kube.py
"""

from __future__ import annotations

import json
import socket
import sys
import threading
from pathlib import Path

import httpx
import pytest

# Ensure project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from fakes import csr_event, status_event
from gatekeeper.errors import SubscriptionError, TransportError, UpdateConflictError
from gatekeeper.kube import CSR_PATH, KubeRequestStoreClient, connect
from gatekeeper.approval import build_decision_condition
from gatekeeper.models import ConditionType, SigningRequest
from gatekeeper.translator import translate
from gatekeeper.watch import WatchRegistry

TOKEN = "sa-token"


def _client(handler) -> KubeRequestStoreClient:
    return KubeRequestStoreClient(
        "https://api.test:6443/",
        TOKEN,
        transport=httpx.MockTransport(handler),
    )


def _lines(*events) -> bytes:
    return b"".join(
        (e if isinstance(e, str) else json.dumps(e)).encode() + b"\n" for e in events
    )


# ---------------------------------------------------------------------------
# Watch
# ---------------------------------------------------------------------------

def test_watch_yields_decoded_events():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["watch"] = request.url.params.get("watch")
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, content=_lines(csr_event("a"), "not-json", "", csr_event("b")))

    events = list(_client(handler).watch_signing_requests())

    assert seen == {"path": CSR_PATH, "watch": "true", "auth": f"Bearer {TOKEN}"}
    assert [e if isinstance(e, str) else e["object"]["metadata"]["name"] for e in events] == [
        "a", "not-json", "b",
    ]


def test_watch_rejected_raises_subscription_error():
    def handler(request):
        return httpx.Response(403, json={"kind": "Status", "message": "forbidden: user cannot watch"})

    with pytest.raises(SubscriptionError) as excinfo:
        _client(handler).watch_signing_requests()
    assert excinfo.value.status_code == 403
    assert "forbidden" in str(excinfo.value)


def test_watch_connect_failure_raises_subscription_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SubscriptionError):
        _client(handler).watch_signing_requests()


def test_watch_read_failure_raises_transport_error():
    def body():
        yield _lines(csr_event("a"))
        raise httpx.ReadError("connection reset")

    def handler(request):
        return httpx.Response(200, content=body())

    watch = _client(handler).watch_signing_requests()
    received = []
    with pytest.raises(TransportError):
        for event in watch:
            received.append(event)
    assert len(received) == 1


def test_closed_watch_ends_quietly():
    def handler(request):
        # Streamed body, so nothing is buffered before close.
        return httpx.Response(200, content=iter([_lines(csr_event("a"))]))

    watch = _client(handler).watch_signing_requests()
    watch.close()
    assert list(watch) == []


def test_registry_over_kube_client():
    def handler(request):
        return httpx.Response(200, content=_lines(csr_event("a"), status_event(), csr_event("b")))

    diagnostics = []
    registry = WatchRegistry(_client(handler), diagnostics=diagnostics.append)
    stream = registry.open_watch()
    assert [r.name for r in stream] == ["a", "b"]
    assert len(diagnostics) == 1
    registry.stop_all()


class _StallingServer:
    """Answers one watch with a chunked 200 and one event, then goes quiet."""

    def __init__(self):
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(1)
        self.port = self._listener.getsockname()[1]
        self._release = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        conn, _ = self._listener.accept()
        with conn:
            head = b""
            while b"\r\n\r\n" not in head:
                data = conn.recv(4096)
                if not data:
                    return
                head += data
            body = _lines(csr_event("csr-1"))
            conn.sendall(
                b"HTTP/1.1 200 OK\r\n"
                b"Content-Type: application/json\r\n"
                b"Transfer-Encoding: chunked\r\n\r\n"
                + f"{len(body):x}\r\n".encode() + body + b"\r\n"
            )
            self._release.wait(10)

    def close(self):
        self._release.set()
        self._listener.close()


def test_stop_all_interrupts_blocked_socket_read():
    server = _StallingServer()
    client = KubeRequestStoreClient(f"http://127.0.0.1:{server.port}", TOKEN)
    registry = WatchRegistry(client)
    try:
        stream = registry.open_watch()
        assert next(stream).name == "csr-1"
        # The translation thread is now blocked reading an idle socket.
        registry.stop_all()
        assert stream.wait_closed(timeout=3)
        assert list(stream) == []
        assert registry.session_count() == 0
    finally:
        server.close()
        client.close()


# ---------------------------------------------------------------------------
# Approval updates
# ---------------------------------------------------------------------------

def test_submit_approval_update_puts_manifest():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        body = json.loads(request.content)
        seen["body"] = body
        return httpx.Response(200, json=body)

    request = translate(csr_event("csr-1")).request
    request.status.conditions.append(build_decision_condition(ConditionType.APPROVED))
    updated = _client(handler).submit_approval_update("csr-1", request)

    assert seen["method"] == "PUT"
    assert seen["path"] == f"{CSR_PATH}/csr-1/approval"
    assert seen["body"]["metadata"]["resourceVersion"] == "1"
    assert seen["body"]["status"]["conditions"][0]["type"] == "Approved"
    assert updated.conditions[0].type == "Approved"


def test_conflict_maps_to_update_conflict_error():
    def handler(request):
        return httpx.Response(409, json={
            "kind": "Status",
            "reason": "Conflict",
            "message": "the object has been modified; please apply your changes to the latest version",
        })

    with pytest.raises(UpdateConflictError) as excinfo:
        _client(handler).submit_approval_update("csr-1", SigningRequest.named("csr-1"))
    assert excinfo.value.name == "csr-1"
    assert "modified" in excinfo.value.detail


@pytest.mark.parametrize("status", [401, 404, 500])
def test_http_failure_maps_to_transport_error(status):
    def handler(request):
        return httpx.Response(status, text="boom")

    with pytest.raises(TransportError) as excinfo:
        _client(handler).submit_approval_update("csr-1", SigningRequest.named("csr-1"))
    assert excinfo.value.status_code == status


def test_network_failure_maps_to_transport_error():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(TransportError) as excinfo:
        _client(handler).submit_approval_update("csr-1", SigningRequest.named("csr-1"), timeout=0.5)
    assert excinfo.value.status_code is None


def test_get_signing_request():
    def handler(request):
        assert request.url.path == f"{CSR_PATH}/csr-7"
        return httpx.Response(200, json=csr_event("csr-7")["object"])

    assert _client(handler).get_signing_request("csr-7").name == "csr-7"


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

def test_connect_reads_token_file(tmp_path: Path):
    token_file = tmp_path / "token"
    token_file.write_text("secret-token\n")

    client = connect("https://10.0.0.1:6443", str(token_file))
    try:
        assert client.kube_host == "https://10.0.0.1:6443"
        assert client._client.headers["Authorization"] == "Bearer secret-token"
    finally:
        client.close()


def test_connect_missing_token_file(tmp_path: Path):
    with pytest.raises(OSError):
        connect("https://10.0.0.1:6443", str(tmp_path / "missing"))
