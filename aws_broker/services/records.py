"""Persisted representation of one provisioned data-store instance."""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional


class ServiceKind(str, Enum):
    """Technologies the broker can provision."""

    RDS = "rds"
    REDIS = "redis"


class InstanceStatus(str, Enum):
    """Lifecycle status of an instance record."""

    REQUESTED = "requested"
    PROVISIONING = "provisioning"
    READY = "ready"
    PROVISIONING_FAILED = "provisioning-failed"
    MODIFYING = "modifying"
    MODIFY_FAILED = "modify-failed"
    BINDING = "binding"
    BOUND = "bound"
    DELETING = "deleting"
    DELETED = "deleted"
    DELETION_FAILED = "deletion-failed"


# Statuses in which the provider is still acting on an accepted request.
IN_PROGRESS_STATUSES = frozenset(
    {InstanceStatus.PROVISIONING, InstanceStatus.MODIFYING, InstanceStatus.DELETING}
)
USABLE_STATUSES = frozenset({InstanceStatus.READY, InstanceStatus.BOUND})
FAILED_STATUSES = frozenset(
    {
        InstanceStatus.PROVISIONING_FAILED,
        InstanceStatus.MODIFY_FAILED,
        InstanceStatus.DELETION_FAILED,
    }
)


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class InstanceRecord:
    """One provisioned resource and its current lifecycle state.

    The password is only ever held here in encrypted form; ``password_salt``
    carries the per-secret salt needed by the credential codec.
    """

    instance_id: str
    organization_id: str
    space_id: str
    service_id: str
    plan_id: str
    service_kind: ServiceKind
    status: InstanceStatus = InstanceStatus.REQUESTED
    username: Optional[str] = None
    password_ciphertext: Optional[str] = None
    password_salt: Optional[str] = None
    database_name: Optional[str] = None
    resource_name: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    engine: Optional[str] = None
    engine_version: Optional[str] = None
    allocated_storage: Optional[int] = None
    instance_class: Optional[str] = None
    enable_functions: bool = False
    pending_changes: Dict[str, Any] = field(default_factory=dict)
    tags: Dict[str, str] = field(default_factory=dict)
    last_error: Optional[str] = None
    claim_operation: Optional[str] = None
    claim_token: Optional[str] = None
    claimed_at: Optional[str] = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    @property
    def in_progress(self) -> bool:
        return self.status in IN_PROGRESS_STATUSES

    def touch(self) -> None:
        self.updated_at = utcnow()

    def claim(self, operation: str) -> str:
        """Mark ``operation`` as the single writer of this record and return its token."""

        self.claim_operation = operation
        self.claim_token = uuid.uuid4().hex
        self.claimed_at = utcnow()
        return self.claim_token

    def release_claim(self) -> None:
        self.claim_operation = None
        self.claim_token = None
        self.claimed_at = None

    def claim_active(self, ttl_seconds: float) -> bool:
        """True while a claim is held and younger than ``ttl_seconds``.

        Claims left behind by a process that died are ignored once they expire.
        """
        if not self.claim_token or not self.claimed_at:
            return False
        age = datetime.now(timezone.utc) - datetime.fromisoformat(self.claimed_at)
        return age < timedelta(seconds=ttl_seconds)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["service_kind"] = self.service_kind.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstanceRecord":
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        values["service_kind"] = ServiceKind(values["service_kind"])
        values["status"] = InstanceStatus(values.get("status", InstanceStatus.REQUESTED.value))
        values["tags"] = dict(values.get("tags") or {})
        values["pending_changes"] = dict(values.get("pending_changes") or {})
        return cls(**values)


def unchanged_since(snapshot: InstanceRecord) -> Callable[[InstanceRecord], bool]:
    """Condition for conditional writes: the stored record is still ``snapshot``."""

    status, token, updated_at = snapshot.status, snapshot.claim_token, snapshot.updated_at

    def condition(current: InstanceRecord) -> bool:
        return (
            current.status is status
            and current.claim_token == token
            and current.updated_at == updated_at
        )

    return condition


__all__ = [
    "ServiceKind",
    "InstanceStatus",
    "InstanceRecord",
    "IN_PROGRESS_STATUSES",
    "USABLE_STATUSES",
    "FAILED_STATUSES",
    "utcnow",
    "unchanged_since",
]
