"""
Signing Request Models
API Reference: certificates.k8s.io/v1 CertificateSigningRequest

Typed view of the signing requests the controller watches and decides.
Only the fields the controller reads or writes are modelled; everything
else the API server sends is preserved so a decided request can be written
back whole.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SIGNING_REQUEST_KIND = "CertificateSigningRequest"
SIGNING_REQUEST_API_VERSION = "certificates.k8s.io/v1"
CONDITION_TRUE = "True"


# ---------------------------------------------------------------------------
# Domain types
# ---------------------------------------------------------------------------

class ConditionType(str, Enum):
    APPROVED = "Approved"
    DENIED = "Denied"
    FAILED = "Failed"


DECISION_TYPES = frozenset({ConditionType.APPROVED.value, ConditionType.DENIED.value})


def now_timestamp() -> str:
    """Current UTC time in the RFC 3339 form the API server stores."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Condition(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str                  # Approved | Denied | Failed
    status: str = CONDITION_TRUE
    reason: str = ""
    message: str = ""
    last_update_time: Optional[str] = Field(default=None, alias="lastUpdateTime")


class SigningRequestStatus(BaseModel):
    model_config = ConfigDict(extra="allow")

    conditions: list[Condition] = Field(default_factory=list)

    @field_validator("conditions", mode="before")
    @classmethod
    def _null_conditions(cls, value: Any) -> Any:
        return [] if value is None else value


class SigningRequest(BaseModel):
    """One pending (or decided) credential request.

    ``status.conditions`` is append-only from the controller's side: a
    decision appends exactly one condition and never touches earlier ones.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    api_version: str = Field(default=SIGNING_REQUEST_API_VERSION, alias="apiVersion")
    kind: Literal["CertificateSigningRequest"] = SIGNING_REQUEST_KIND
    metadata: dict[str, Any]
    spec: dict[str, Any] = Field(default_factory=dict)
    status: SigningRequestStatus = Field(default_factory=SigningRequestStatus)

    @field_validator("metadata")
    @classmethod
    def _require_name(cls, value: dict[str, Any]) -> dict[str, Any]:
        name = value.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError("metadata.name is required")
        return value

    @field_validator("spec", "status", mode="before")
    @classmethod
    def _null_section(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def name(self) -> str:
        return self.metadata["name"]

    @property
    def conditions(self) -> list[Condition]:
        return self.status.conditions

    def is_decided(self) -> bool:
        """True once an Approved or Denied condition has been recorded."""
        return any(c.type in DECISION_TYPES for c in self.status.conditions)

    def to_manifest(self) -> dict[str, Any]:
        """Serialize to the JSON object the API server expects."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> SigningRequest:
        return cls.model_validate(manifest)

    @classmethod
    def named(cls, name: str, **fields: Any) -> SigningRequest:
        """Build a minimal request; handy for policy code and tests."""
        return cls(metadata={"name": name}, **fields)
