"""Domain models for broker requests, responses and audit events."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import ResponseStatus


class AuditAction(str, Enum):
    """Actions recorded on the audit stream."""

    CREATE_INSTANCE = "CREATE_INSTANCE"
    MODIFY_INSTANCE = "MODIFY_INSTANCE"
    BIND_INSTANCE = "BIND_INSTANCE"
    LAST_OPERATION = "LAST_OPERATION"
    DELETE_INSTANCE = "DELETE_INSTANCE"
    RECONCILE = "RECONCILE"


class AuditOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    ACCEPTED = "ACCEPTED"
    FAILURE = "FAILURE"


class LastOperationState(str, Enum):
    """Tri-state reported to the platform while it polls."""

    IN_PROGRESS = "in progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class BrokerRequest:
    """Request as parsed by the caller-facing protocol layer."""

    instance_id: str
    plan_id: str = ""
    service_id: str = ""
    organization_id: str = ""
    space_id: str = ""
    raw_parameters: bytes = b""
    binding_id: Optional[str] = None


@dataclass
class BrokerResponse:
    """Status class plus an optional description and payload."""

    status: ResponseStatus
    description: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.status not in (ResponseStatus.ACCEPTED, ResponseStatus.SUCCESS)


__all__ = [
    "AuditAction",
    "AuditOutcome",
    "LastOperationState",
    "BrokerRequest",
    "BrokerResponse",
]
