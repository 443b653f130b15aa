"""Dedicated ElastiCache Redis replication groups."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ...config import ProviderConfig
from ...errors import ProviderErrorKind
from ...services.catalog import Plan
from ...services.records import InstanceRecord, InstanceStatus
from .base import (
    AdapterResult,
    BindResult,
    Operation,
    ProviderAdapter,
    missing_resource_status,
    not_available_error,
    not_found_error,
    provider_error_from_exception,
)

LOGGER = logging.getLogger(__name__)

REDIS_PORT = 6379
# ElastiCache limits replication group ids to 40 characters.
MAX_GROUP_ID_LENGTH = 40

_STATUS_MAP = {
    "creating": InstanceStatus.PROVISIONING,
    "available": InstanceStatus.READY,
    "modifying": InstanceStatus.MODIFYING,
    "snapshotting": InstanceStatus.MODIFYING,
    "deleting": InstanceStatus.DELETING,
    "create-failed": InstanceStatus.PROVISIONING_FAILED,
}


def map_redis_status(provider_status: str, record: InstanceRecord) -> InstanceStatus:
    status = _STATUS_MAP.get(provider_status)
    if status is None:
        LOGGER.warning("Unknown ElastiCache status", extra={"provider_status": provider_status})
        return record.status if record.in_progress else InstanceStatus.PROVISIONING
    if status is InstanceStatus.MODIFYING and record.status is InstanceStatus.PROVISIONING:
        # snapshotting right after creation is still part of provisioning
        return InstanceStatus.PROVISIONING
    return status


class DedicatedRedisAdapter(ProviderAdapter):
    """Provision one ElastiCache replication group per broker instance."""

    async_operations = frozenset({Operation.CREATE, Operation.MODIFY, Operation.DELETE})

    def __init__(self, plan: Plan, provider: ProviderConfig, elasticache_client: Any) -> None:
        super().__init__(plan)
        self._provider = provider
        self._elasticache = elasticache_client

    def identifier(self, record: InstanceRecord) -> str:
        if record.resource_name:
            return record.resource_name
        prefix = self._provider.db_prefix.split("-")[0] or "cg"
        group_id = f"{prefix}-{record.instance_id.replace('-', '')}"
        return group_id[:MAX_GROUP_ID_LENGTH].lower()

    def create_instance(self, record: InstanceRecord, password: str) -> AdapterResult:
        record.resource_name = self.identifier(record)
        params: Dict[str, Any] = {
            "ReplicationGroupId": record.resource_name,
            "ReplicationGroupDescription": f"Redis for instance {record.instance_id}",
            "Engine": "redis",
            "CacheNodeType": record.instance_class or self.plan.node_type,
            "NumCacheClusters": self.plan.num_cache_clusters,
            "AutomaticFailoverEnabled": self.plan.num_cache_clusters > 1,
            "TransitEncryptionEnabled": True,
            "AtRestEncryptionEnabled": True,
            "AuthToken": password,
            "Port": REDIS_PORT,
            "Tags": [{"Key": key, "Value": value} for key, value in record.tags.items()],
        }
        if record.engine_version:
            params["EngineVersion"] = record.engine_version
        if self._provider.cache_subnet_group:
            params["CacheSubnetGroupName"] = self._provider.cache_subnet_group
        if self._provider.security_groups:
            params["SecurityGroupIds"] = list(self._provider.security_groups)

        LOGGER.info(
            "Creating ElastiCache replication group",
            extra={"instance_id": record.instance_id, "identifier": record.resource_name},
        )
        try:
            self._elasticache.create_replication_group(**params)
        except (ClientError, BotoCoreError) as exc:
            error = provider_error_from_exception(exc)
            LOGGER.error(
                "ElastiCache create_replication_group failed",
                extra={"instance_id": record.instance_id, "error": str(error)},
            )
            return AdapterResult(InstanceStatus.PROVISIONING_FAILED, error)
        return AdapterResult(InstanceStatus.PROVISIONING)

    def modify_instance(self, record: InstanceRecord) -> AdapterResult:
        params: Dict[str, Any] = {
            "ReplicationGroupId": self.identifier(record),
            "ApplyImmediately": True,
        }
        engine_version = record.pending_changes.get("engine_version")
        if engine_version:
            params["EngineVersion"] = engine_version
        node_type = record.pending_changes.get("instance_class")
        if node_type:
            params["CacheNodeType"] = node_type

        LOGGER.info("Modifying ElastiCache replication group", extra={"instance_id": record.instance_id})
        try:
            self._elasticache.modify_replication_group(**params)
        except (ClientError, BotoCoreError) as exc:
            error = provider_error_from_exception(exc)
            LOGGER.error(
                "ElastiCache modify_replication_group failed",
                extra={"instance_id": record.instance_id, "error": str(error)},
            )
            return AdapterResult(InstanceStatus.MODIFY_FAILED, error)
        return AdapterResult(InstanceStatus.MODIFYING)

    def _describe(self, record: InstanceRecord) -> Optional[Dict[str, Any]]:
        response = self._elasticache.describe_replication_groups(
            ReplicationGroupId=self.identifier(record)
        )
        groups = response.get("ReplicationGroups", [])
        return groups[0] if groups else None

    def check_status(self, record: InstanceRecord) -> AdapterResult:
        try:
            group = self._describe(record)
        except (ClientError, BotoCoreError) as exc:
            error = provider_error_from_exception(exc)
            if error.kind is ProviderErrorKind.NOT_FOUND:
                return AdapterResult(missing_resource_status(record), error)
            LOGGER.warning(
                "ElastiCache describe_replication_groups failed",
                extra={"instance_id": record.instance_id, "error": str(error)},
            )
            return AdapterResult(record.status, error)
        if group is None:
            return AdapterResult(missing_resource_status(record), not_found_error(record))

        status = map_redis_status(group.get("Status", ""), record)
        if record.status is InstanceStatus.DELETING and status is not InstanceStatus.DELETING:
            status = InstanceStatus.DELETING
        self._remember_endpoint(record, group)
        return AdapterResult(status)

    def bind_to_consumer(self, record: InstanceRecord, password: str) -> BindResult:
        if not record.host or record.status not in (InstanceStatus.READY, InstanceStatus.BOUND):
            result = self.check_status(record)
            if result.error is not None:
                return BindResult(error=result.error)
            if result.status is not InstanceStatus.READY or not record.host:
                return BindResult(error=not_available_error())
            record.status = InstanceStatus.READY

        port = record.port or REDIS_PORT
        credentials = {
            "host": record.host or "",
            "port": str(port),
            "name": record.resource_name or "",
            "username": "",
            "password": password,
            "current_redis_engine_version": record.engine_version or "",
        }
        # ElastiCache AUTH tokens have no user and require TLS
        credentials["uri"] = f"rediss://:{password}@{credentials['host']}:{port}"
        return BindResult(credentials)

    def delete_instance(self, record: InstanceRecord) -> AdapterResult:
        LOGGER.info("Deleting ElastiCache replication group", extra={"instance_id": record.instance_id})
        try:
            self._elasticache.delete_replication_group(ReplicationGroupId=self.identifier(record))
        except (ClientError, BotoCoreError) as exc:
            error = provider_error_from_exception(exc)
            if error.kind is ProviderErrorKind.NOT_FOUND:
                return AdapterResult(InstanceStatus.DELETED)
            LOGGER.error(
                "ElastiCache delete_replication_group failed",
                extra={"instance_id": record.instance_id, "error": str(error)},
            )
            return AdapterResult(InstanceStatus.DELETION_FAILED, error)
        return AdapterResult(InstanceStatus.DELETING)

    @staticmethod
    def _remember_endpoint(record: InstanceRecord, group: Dict[str, Any]) -> None:
        node_groups = group.get("NodeGroups") or []
        endpoint = node_groups[0].get("PrimaryEndpoint", {}) if node_groups else {}
        if not endpoint:
            endpoint = group.get("ConfigurationEndpoint") or {}
        if endpoint.get("Address"):
            record.host = endpoint["Address"]
            record.port = endpoint.get("Port", REDIS_PORT)


__all__ = ["DedicatedRedisAdapter", "map_redis_status"]
