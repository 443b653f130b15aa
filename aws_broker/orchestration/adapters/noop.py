"""Adapter used when provider calls are disabled."""
from __future__ import annotations

import logging

from ...services.records import InstanceRecord, InstanceStatus
from .base import AdapterResult, BindResult, ProviderAdapter, build_uri

LOGGER = logging.getLogger(__name__)

_PORTS = {"postgres": 5432, "mysql": 3306, "redis": 6379}


class NoopAdapter(ProviderAdapter):
    """Pretend every provider call succeeded immediately."""

    def _port(self) -> int:
        engine = "redis" if self.plan.service_kind.value == "redis" else self.plan.engine
        return _PORTS.get(engine, 5432)

    def create_instance(self, record: InstanceRecord, password: str) -> AdapterResult:
        LOGGER.warning(
            "Provider calls disabled; simulated create", extra={"instance_id": record.instance_id}
        )
        record.resource_name = record.resource_name or record.instance_id
        record.host = "localhost"
        record.port = self._port()
        return AdapterResult(InstanceStatus.READY)

    def modify_instance(self, record: InstanceRecord) -> AdapterResult:
        LOGGER.warning(
            "Provider calls disabled; simulated modify", extra={"instance_id": record.instance_id}
        )
        return AdapterResult(InstanceStatus.READY)

    def check_status(self, record: InstanceRecord) -> AdapterResult:
        if record.status in (InstanceStatus.DELETING, InstanceStatus.DELETION_FAILED):
            return AdapterResult(InstanceStatus.DELETED)
        return AdapterResult(InstanceStatus.READY)

    def bind_to_consumer(self, record: InstanceRecord, password: str) -> BindResult:
        host = record.host or "localhost"
        port = record.port or self._port()
        username = record.username or ""
        name = record.database_name or record.resource_name or ""
        scheme = "rediss" if self.plan.service_kind.value == "redis" else self.plan.engine
        return BindResult(
            {
                "host": host,
                "port": str(port),
                "name": name,
                "username": username,
                "password": password,
                "uri": build_uri(scheme, username, password, host, port, name),
            }
        )

    def delete_instance(self, record: InstanceRecord) -> AdapterResult:
        LOGGER.warning(
            "Provider calls disabled; simulated delete", extra={"instance_id": record.instance_id}
        )
        return AdapterResult(InstanceStatus.DELETED)


__all__ = ["NoopAdapter"]
