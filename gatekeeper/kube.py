"""
Kubernetes Request Store Client
API Reference: certificates.k8s.io/v1

Thin synchronous wrapper over the API server's signing-request endpoints:
a streaming watch, the approval subresource, and a single-object read.
``connect`` is the one-time bootstrap that turns a host and a service
account token file into a client.
"""

from __future__ import annotations

import json
import logging
import os
import socket
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx

from gatekeeper.errors import SubscriptionError, TransportError, UpdateConflictError
from gatekeeper.models import SigningRequest

_log = logging.getLogger(__name__)

CSR_PATH = "/apis/certificates.k8s.io/v1/certificatesigningrequests"

KUBE_REQUEST_TIMEOUT_SECONDS = float(
    os.environ.get("KUBE_REQUEST_TIMEOUT_SECONDS", "10")
)


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------

class Subscription(Protocol):
    """Yields raw change notifications until exhausted or closed."""

    def __iter__(self) -> Iterator[Any]: ...

    def close(self) -> None: ...


class RequestStoreClient(Protocol):
    def watch_signing_requests(self) -> Subscription: ...

    def submit_approval_update(
        self,
        name: str,
        request: SigningRequest,
        timeout: Optional[float] = None,
    ) -> SigningRequest: ...

    def get_signing_request(self, name: str) -> SigningRequest: ...


# ---------------------------------------------------------------------------
# Watch stream
# ---------------------------------------------------------------------------

class KubeWatch:
    """One open ``?watch=true`` response, decoded line by line.

    Lines that are not valid JSON are passed through as strings so the
    translator can report them.
    """

    def __init__(self, response: httpx.Response):
        self._response = response
        self._closed = False

    def __iter__(self) -> Iterator[Any]:
        try:
            for line in self._response.iter_lines():
                if not line.strip():
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    yield line
        except (httpx.HTTPError, httpx.StreamError) as exc:
            if self._closed:
                return
            raise TransportError(f"Watch stream failed: {exc}") from exc
        finally:
            self._response.close()

    def close(self) -> None:
        """End the watch, waking a reader blocked on the socket."""
        self._closed = True
        # Closing the response alone does not interrupt a read in progress
        # on another thread. Shutting the socket down makes that read fail.
        network_stream = self._response.extensions.get("network_stream")
        if network_stream is not None:
            sock = network_stream.get_extra_info("socket")
            if sock is not None:
                try:
                    sock.shutdown(socket.SHUT_RDWR)
                except OSError as exc:
                    _log.debug("watch socket already shut down: %s", exc)
        self._response.close()


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class KubeRequestStoreClient:
    """
    Client for the API server's CertificateSigningRequest resource.

    Safe to share between watch threads and approval calls; the underlying
    ``httpx.Client`` pools connections across threads.
    """

    def __init__(
        self,
        kube_host: str,
        bearer_token: str,
        verify: bool = False,
        timeout: float = KUBE_REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Args:
            kube_host: Base URL of the API server (e.g. "https://10.0.0.1:6443")
            bearer_token: Service account token sent on every request
            verify: TLS verification; off by default like the bootstrap it replaces
            timeout: Per-request timeout in seconds for non-watch calls
            transport: Optional httpx transport (used by tests)
        """
        self.kube_host = kube_host.rstrip("/")
        self._timeout = timeout
        self._client = httpx.Client(
            base_url=self.kube_host,
            headers={"Authorization": f"Bearer {bearer_token}"},
            verify=verify,
            timeout=timeout,
            transport=transport,
        )

    def watch_signing_requests(self) -> KubeWatch:
        """Open a watch on all signing requests. Raises SubscriptionError."""
        request = self._client.build_request(
            "GET",
            CSR_PATH,
            params={"watch": "true"},
            # A watch idles for long stretches; never time out reads.
            timeout=httpx.Timeout(self._timeout, read=None),
        )
        try:
            response = self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise SubscriptionError(f"Could not open watch: {exc}") from exc

        if response.status_code != 200:
            response.read()
            response.close()
            raise SubscriptionError(
                f"Watch rejected with HTTP {response.status_code}: "
                f"{_status_message(response)}",
                status_code=response.status_code,
            )

        _log.info("watch opened on %s%s", self.kube_host, CSR_PATH)
        return KubeWatch(response)

    def submit_approval_update(
        self,
        name: str,
        request: SigningRequest,
        timeout: Optional[float] = None,
    ) -> SigningRequest:
        """PUT the request to its approval subresource and return the stored result."""
        kwargs: dict[str, Any] = {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            resp = self._client.put(
                f"{CSR_PATH}/{name}/approval",
                json=request.to_manifest(),
                **kwargs,
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"Approval update for {name} failed: {exc}") from exc

        if resp.status_code == 409:
            raise UpdateConflictError(name, _status_message(resp))
        _raise_for_status(resp, f"Approval update for {name}")
        return SigningRequest.from_manifest(resp.json())

    def get_signing_request(self, name: str) -> SigningRequest:
        """Fetch the current version of one signing request."""
        try:
            resp = self._client.get(f"{CSR_PATH}/{name}")
        except httpx.HTTPError as exc:
            raise TransportError(f"Fetching {name} failed: {exc}") from exc
        _raise_for_status(resp, f"Fetching {name}")
        return SigningRequest.from_manifest(resp.json())

    def close(self) -> None:
        self._client.close()


def _status_message(resp: httpx.Response) -> str:
    """Pull ``message`` out of an API Status body, falling back to raw text."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return resp.text


def _raise_for_status(resp: httpx.Response, action: str) -> None:
    if resp.status_code >= 400:
        raise TransportError(
            f"{action} failed with HTTP {resp.status_code}: {_status_message(resp)}",
            status_code=resp.status_code,
        )


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

def connect(kube_host: str, kube_token_file: str) -> KubeRequestStoreClient:
    """Read the bearer token from *kube_token_file* and build a client.

    Raises OSError if the token file cannot be read.
    """
    token = Path(kube_token_file).read_text(encoding="utf-8").strip()
    return KubeRequestStoreClient(kube_host=kube_host, bearer_token=token)
