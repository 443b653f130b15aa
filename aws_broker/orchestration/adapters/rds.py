"""Dedicated RDS instances: one provider database instance per broker instance."""
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
    build_uri,
    missing_resource_status,
    not_available_error,
    not_found_error,
    provider_error_from_exception,
)

LOGGER = logging.getLogger(__name__)

ENGINE_SCHEMES = {"postgres": "postgres", "mysql": "mysql", "mariadb": "mysql"}
DEFAULT_PORTS = {"postgres": 5432, "mysql": 3306, "mariadb": 3306}

PROVISIONING_STATES = frozenset(
    {
        "creating",
        "backing-up",
        "configuring-enhanced-monitoring",
        "configuring-iam-database-auth",
        "configuring-log-exports",
        "converting-to-vpc",
        "rebooting",
        "starting",
        "maintenance",
    }
)
MODIFYING_STATES = frozenset(
    {
        "modifying",
        "upgrading",
        "storage-optimization",
        "resetting-master-credentials",
        "renaming",
        "moving-to-vpc",
    }
)
FAILED_STATES = frozenset(
    {
        "failed",
        "incompatible-network",
        "incompatible-option-group",
        "incompatible-parameters",
        "incompatible-restore",
        "inaccessible-encryption-credentials",
        "restore-error",
    }
)
# The instance still serves reads and accepts a storage increase.
STORAGE_FULL = "storage-full"
STORAGE_FULL_NOTICE = "Instance storage is full; increase storage to restore writes"
BINDABLE_STATUSES = frozenset(
    {InstanceStatus.READY, InstanceStatus.BOUND, InstanceStatus.MODIFYING, InstanceStatus.MODIFY_FAILED}
)


def map_rds_status(provider_status: str, record: InstanceRecord) -> InstanceStatus:
    """Map a ``DBInstanceStatus`` value to the canonical status set."""

    modifying = record.status in (InstanceStatus.MODIFYING, InstanceStatus.MODIFY_FAILED)
    if provider_status in ("available", STORAGE_FULL):
        return InstanceStatus.READY
    if provider_status == "deleting":
        return InstanceStatus.DELETING
    if provider_status in MODIFYING_STATES:
        return InstanceStatus.MODIFYING
    if provider_status in PROVISIONING_STATES:
        return InstanceStatus.MODIFYING if modifying else InstanceStatus.PROVISIONING
    if provider_status in FAILED_STATES:
        return InstanceStatus.MODIFY_FAILED if modifying else InstanceStatus.PROVISIONING_FAILED
    LOGGER.warning("Unknown RDS instance status", extra={"provider_status": provider_status})
    return record.status if record.in_progress else InstanceStatus.PROVISIONING


class DedicatedRDSAdapter(ProviderAdapter):
    """Provision standalone RDS database instances through boto3."""

    async_operations = frozenset({Operation.CREATE, Operation.MODIFY, Operation.DELETE})

    def __init__(self, plan: Plan, provider: ProviderConfig, rds_client: Any) -> None:
        super().__init__(plan)
        self._provider = provider
        self._rds = rds_client

    def identifier(self, record: InstanceRecord) -> str:
        return record.resource_name or f"{self._provider.db_prefix}-{record.instance_id}"

    def create_instance(self, record: InstanceRecord, password: str) -> AdapterResult:
        record.resource_name = self.identifier(record)
        params: Dict[str, Any] = {
            "DBInstanceIdentifier": record.resource_name,
            "DBInstanceClass": record.instance_class or self.plan.instance_class,
            "Engine": record.engine or self.plan.engine,
            "AllocatedStorage": record.allocated_storage or self.plan.allocated_storage,
            "DBName": record.database_name,
            "MasterUsername": record.username,
            "MasterUserPassword": password,
            "StorageEncrypted": True,
            "PubliclyAccessible": False,
            "CopyTagsToSnapshot": True,
            "Tags": [{"Key": key, "Value": value} for key, value in record.tags.items()],
        }
        if record.engine_version:
            params["EngineVersion"] = record.engine_version
        if self._provider.db_subnet_group:
            params["DBSubnetGroupName"] = self._provider.db_subnet_group
        if self._provider.security_groups:
            params["VpcSecurityGroupIds"] = list(self._provider.security_groups)
        if record.enable_functions and self._provider.functions_parameter_group:
            params["DBParameterGroupName"] = self._provider.functions_parameter_group

        LOGGER.info(
            "Creating dedicated RDS instance",
            extra={"instance_id": record.instance_id, "identifier": record.resource_name},
        )
        try:
            self._rds.create_db_instance(**params)
        except (ClientError, BotoCoreError) as exc:
            error = provider_error_from_exception(exc)
            LOGGER.error(
                "RDS create_db_instance failed",
                extra={"instance_id": record.instance_id, "error": str(error)},
            )
            return AdapterResult(InstanceStatus.PROVISIONING_FAILED, error)
        return AdapterResult(InstanceStatus.PROVISIONING)

    def modify_instance(self, record: InstanceRecord) -> AdapterResult:
        params: Dict[str, Any] = {
            "DBInstanceIdentifier": self.identifier(record),
            "ApplyImmediately": True,
        }
        changes = record.pending_changes
        if changes.get("engine_version"):
            params["EngineVersion"] = changes["engine_version"]
            params["AllowMajorVersionUpgrade"] = True
        if changes.get("allocated_storage"):
            params["AllocatedStorage"] = changes["allocated_storage"]
        if changes.get("instance_class"):
            params["DBInstanceClass"] = changes["instance_class"]

        LOGGER.info("Modifying dedicated RDS instance", extra={"instance_id": record.instance_id})
        try:
            self._rds.modify_db_instance(**params)
        except (ClientError, BotoCoreError) as exc:
            error = provider_error_from_exception(exc)
            LOGGER.error(
                "RDS modify_db_instance failed",
                extra={"instance_id": record.instance_id, "error": str(error)},
            )
            return AdapterResult(InstanceStatus.MODIFY_FAILED, error)
        return AdapterResult(InstanceStatus.MODIFYING)

    def _describe(self, record: InstanceRecord) -> Optional[Dict[str, Any]]:
        response = self._rds.describe_db_instances(DBInstanceIdentifier=self.identifier(record))
        instances = response.get("DBInstances", [])
        return instances[0] if instances else None

    def check_status(self, record: InstanceRecord) -> AdapterResult:
        try:
            instance = self._describe(record)
        except (ClientError, BotoCoreError) as exc:
            error = provider_error_from_exception(exc)
            if error.kind is ProviderErrorKind.NOT_FOUND:
                return AdapterResult(missing_resource_status(record), error)
            LOGGER.warning(
                "RDS describe_db_instances failed",
                extra={"instance_id": record.instance_id, "error": str(error)},
            )
            return AdapterResult(record.status, error)
        if instance is None:
            return AdapterResult(missing_resource_status(record), not_found_error(record))

        provider_status = instance.get("DBInstanceStatus", "")
        status = map_rds_status(provider_status, record)
        if record.status is InstanceStatus.DELETING and status is not InstanceStatus.DELETING:
            # delete was submitted; a lingering describe must not regress the record
            status = InstanceStatus.DELETING
        self._remember_endpoint(record, instance)
        if provider_status == STORAGE_FULL and status is InstanceStatus.READY:
            LOGGER.warning("RDS instance storage is full", extra={"instance_id": record.instance_id})
            return AdapterResult(status, notice=STORAGE_FULL_NOTICE)
        return AdapterResult(status)

    def bind_to_consumer(self, record: InstanceRecord, password: str) -> BindResult:
        if not record.host or record.status not in BINDABLE_STATUSES:
            # first bind: resolve the endpoint once and keep it on the record
            result = self.check_status(record)
            if result.error is not None:
                return BindResult(error=result.error)
            if result.status is not InstanceStatus.READY or not record.host:
                return BindResult(error=not_available_error())
            record.status = InstanceStatus.READY

        engine = record.engine or self.plan.engine
        port = record.port or DEFAULT_PORTS.get(engine, 5432)
        credentials = {
            "db_type": engine,
            "host": record.host or "",
            "port": str(port),
            "name": record.database_name or "",
            "username": record.username or "",
            "password": password,
        }
        credentials["uri"] = build_uri(
            ENGINE_SCHEMES.get(engine, engine),
            credentials["username"],
            password,
            credentials["host"],
            port,
            credentials["name"],
        )
        return BindResult(credentials)

    def delete_instance(self, record: InstanceRecord) -> AdapterResult:
        LOGGER.info("Deleting dedicated RDS instance", extra={"instance_id": record.instance_id})
        try:
            self._rds.delete_db_instance(
                DBInstanceIdentifier=self.identifier(record),
                SkipFinalSnapshot=True,
                DeleteAutomatedBackups=True,
            )
        except (ClientError, BotoCoreError) as exc:
            error = provider_error_from_exception(exc)
            if error.kind is ProviderErrorKind.NOT_FOUND:
                LOGGER.info(
                    "RDS instance already gone", extra={"instance_id": record.instance_id}
                )
                return AdapterResult(InstanceStatus.DELETED)
            LOGGER.error(
                "RDS delete_db_instance failed",
                extra={"instance_id": record.instance_id, "error": str(error)},
            )
            return AdapterResult(InstanceStatus.DELETION_FAILED, error)
        return AdapterResult(InstanceStatus.DELETING)

    @staticmethod
    def _remember_endpoint(record: InstanceRecord, instance: Dict[str, Any]) -> None:
        endpoint = instance.get("Endpoint") or {}
        if endpoint.get("Address"):
            record.host = endpoint["Address"]
            record.port = endpoint.get("Port", record.port)


__all__ = ["DedicatedRDSAdapter", "map_rds_status", "STORAGE_FULL_NOTICE"]
