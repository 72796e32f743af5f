"""
Operator Identity

Bearer-key authentication for the human operator allowed to approve or deny
signing requests through the gateway. Only the key's fingerprint is
configured; the raw key never leaves the operator.
"""

from __future__ import annotations

import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional

OPERATOR_ID = os.environ.get("OPERATOR_ID", "human:operator")


@dataclass
class Operator:
    operator_id: str
    key_fingerprint: str


def hash_api_key(raw_key: str) -> str:
    """Return ``sha256:<hex>`` fingerprint of a raw API key."""
    digest = hashlib.sha256(raw_key.encode()).hexdigest()
    return f"sha256:{digest}"


def authenticate_operator(
    bearer_token: str,
    key_fingerprint: Optional[str],
    operator_id: str = OPERATOR_ID,
) -> Operator:
    """Resolve a Bearer token to the configured operator.

    Compares fingerprints timing-safe. Raises ``ValueError`` when no operator
    key is configured or the token does not match.
    """
    if not key_fingerprint:
        raise ValueError("No operator key configured")
    token_fp = hash_api_key(bearer_token)
    if not hmac.compare_digest(token_fp, key_fingerprint):
        raise ValueError("Invalid API key")
    return Operator(operator_id=operator_id, key_fingerprint=key_fingerprint)
