"""Conservative drift detection between instance records, provider resources and platform ownership."""
from __future__ import annotations

import copy
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

import requests
from botocore.exceptions import BotoCoreError, ClientError

from ..config import AppConfig, PlatformConfig, ReconcileConfig
from ..errors import BrokerError, InternalError, ProviderErrorKind
from ..events.models import AuditAction, AuditOutcome
from ..events.publisher import AuditEventPublisher
from ..services.catalog import Catalog
from ..services.record_store import RecordStore
from ..services.records import InstanceRecord, InstanceStatus, ServiceKind, unchanged_since, utcnow
from .adapters import AdapterFactory, provider_error_from_exception

LOGGER = logging.getLogger(__name__)

INSTANCE_GUID_TAG = "Instance GUID"


class FindingKind(str, Enum):
    ORPHANED_RESOURCE = "orphaned-resource"
    STALE_RECORD = "stale-record"
    UNTRACKED_RESOURCE = "untracked-resource"
    ABANDONED_RECORD = "abandoned-record"
    FINALIZED_DELETION = "finalized-deletion"


@dataclass
class Finding:
    kind: FindingKind
    instance_id: Optional[str]
    resource_name: Optional[str] = None
    service_kind: Optional[str] = None
    detail: str = ""
    repaired: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


@dataclass
class ReconciliationReport:
    started_at: str = field(default_factory=utcnow)
    finished_at: Optional[str] = None
    records_checked: int = 0
    findings: List[Finding] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def by_kind(self, kind: FindingKind) -> List[Finding]:
        return [finding for finding in self.findings if finding.kind is kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "recordsChecked": self.records_checked,
            "findings": [finding.to_dict() for finding in self.findings],
            "errors": list(self.errors),
        }


# ----------------------------------------------------------------------
# Provider inventories
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ProviderResource:
    name: str
    service_kind: ServiceKind
    status: str = ""
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def instance_id(self) -> Optional[str]:
        return self.tags.get(INSTANCE_GUID_TAG)


class ResourceInventory(Protocol):
    def list_resources(self) -> List[ProviderResource]:
        ...


def _tag_dict(tag_list: Iterable[Dict[str, str]]) -> Dict[str, str]:
    return {tag["Key"]: tag.get("Value", "") for tag in tag_list if "Key" in tag}


class RDSInventory:
    """Broker-managed RDS instances, identified by the managed tag."""

    def __init__(self, rds_client: Any, config: ReconcileConfig) -> None:
        self._rds = rds_client
        self._config = config

    def list_resources(self) -> List[ProviderResource]:
        resources: List[ProviderResource] = []
        paginator = self._rds.get_paginator("describe_db_instances")
        for page in paginator.paginate():
            for instance in page.get("DBInstances", []):
                tags = _tag_dict(instance.get("TagList", []))
                if tags.get(self._config.managed_tag_key) != self._config.managed_tag_value:
                    continue
                resources.append(
                    ProviderResource(
                        name=instance["DBInstanceIdentifier"],
                        service_kind=ServiceKind.RDS,
                        status=instance.get("DBInstanceStatus", ""),
                        tags=tags,
                    )
                )
        return resources


class ElastiCacheInventory:
    """Broker-managed ElastiCache replication groups.

    ``describe_replication_groups`` does not return tags, so each group's tags
    are fetched by ARN.
    """

    def __init__(self, elasticache_client: Any, config: ReconcileConfig) -> None:
        self._elasticache = elasticache_client
        self._config = config

    def list_resources(self) -> List[ProviderResource]:
        resources: List[ProviderResource] = []
        paginator = self._elasticache.get_paginator("describe_replication_groups")
        for page in paginator.paginate():
            for group in page.get("ReplicationGroups", []):
                arn = group.get("ARN")
                if not arn:
                    continue
                response = self._elasticache.list_tags_for_resource(ResourceName=arn)
                tags = _tag_dict(response.get("TagList", []))
                if tags.get(self._config.managed_tag_key) != self._config.managed_tag_value:
                    continue
                resources.append(
                    ProviderResource(
                        name=group["ReplicationGroupId"],
                        service_kind=ServiceKind.REDIS,
                        status=group.get("Status", ""),
                        tags=tags,
                    )
                )
        return resources


# ----------------------------------------------------------------------
# Platform ownership
# ----------------------------------------------------------------------
class PlatformClient(Protocol):
    def instance_exists(self, instance_id: str) -> bool:
        ...


class CloudControllerClient:
    """Ask the platform's API whether it still owns a service instance."""

    def __init__(self, config: PlatformConfig, session: Optional[requests.Session] = None) -> None:
        if not config.api_url or not config.uaa_url:
            raise InternalError("Platform api_url and uaa_url must be configured")
        self._config = config
        self._session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        secret = self._config.client_secret.get_secret_value() if self._config.client_secret else ""
        try:
            response = self._session.post(
                f"{self._config.uaa_url.rstrip('/')}/oauth/token",
                data={"grant_type": "client_credentials"},
                auth=(self._config.client_id or "", secret),
                timeout=self._config.timeout_seconds,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise InternalError(f"Unable to obtain platform token: {exc}") from exc
        payload = response.json()
        self._token = payload["access_token"]
        # refresh a little before the advertised expiry
        self._token_expires_at = time.monotonic() + max(int(payload.get("expires_in", 300)) - 30, 0)
        return self._token

    def instance_exists(self, instance_id: str) -> bool:
        url = f"{self._config.api_url.rstrip('/')}/v3/service_instances/{instance_id}"
        try:
            response = self._session.get(
                url,
                headers={"Authorization": f"Bearer {self._access_token()}"},
                timeout=self._config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise InternalError(f"Platform lookup failed for {instance_id}: {exc}") from exc
        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            raise InternalError(
                f"Platform lookup for {instance_id} returned HTTP {response.status_code}"
            )
        return True


# ----------------------------------------------------------------------
# Sweeper
# ----------------------------------------------------------------------
class ReconciliationSweeper:
    """Compare records with provider resources and platform ownership.

    Findings are reported, never acted on against the provider or the
    platform. The only record writes are the removal of records whose delete
    already completed provider-side, plus the opt-in repairs in
    :class:`ReconcileConfig`. Each write applies only if the record is still
    the one the sweep examined; records an operation has claimed are skipped.
    """

    def __init__(
        self,
        config: AppConfig,
        catalog: Catalog,
        record_store: RecordStore,
        adapter_factory: AdapterFactory,
        platform_client: Optional[PlatformClient],
        inventories: Iterable[ResourceInventory],
        audit_publisher: AuditEventPublisher,
    ) -> None:
        self._config = config
        self._catalog = catalog
        self._record_store = record_store
        self._adapter_factory = adapter_factory
        self._platform_client = platform_client
        self._inventories = list(inventories)
        self._audit_publisher = audit_publisher

    @property
    def policy(self) -> ReconcileConfig:
        return self._config.reconcile

    def sweep(self) -> ReconciliationReport:
        report = ReconciliationReport()
        LOGGER.info("Starting reconciliation sweep")
        known_ids: Set[str] = set()
        known_names: Set[str] = set()
        executor = ThreadPoolExecutor(
            max_workers=self._config.provider.max_workers, thread_name_prefix="reconcile"
        )
        try:
            for record in self._record_store.scan():
                known_ids.add(record.instance_id)
                if record.resource_name:
                    known_names.add(record.resource_name)
                report.records_checked += 1
                try:
                    self._check_record(record, report, executor)
                except BrokerError as exc:
                    LOGGER.warning(
                        "Unable to reconcile record",
                        extra={"instance_id": record.instance_id, "error": str(exc)},
                    )
                    report.errors.append(f"{record.instance_id}: {exc}")
        finally:
            executor.shutdown(wait=False)
        self._find_untracked(known_ids, known_names, report)
        report.finished_at = utcnow()
        LOGGER.info(
            "Reconciliation sweep finished",
            extra={
                "records_checked": report.records_checked,
                "findings": len(report.findings),
                "errors": len(report.errors),
            },
        )
        return report

    def _check_record(
        self, record: InstanceRecord, report: ReconciliationReport, executor: ThreadPoolExecutor
    ) -> None:
        if record.status is InstanceStatus.REQUESTED:
            # create not yet submitted; nothing to compare against
            return
        if record.claim_active(self._config.provider.claim_ttl_seconds):
            LOGGER.info(
                "Skipping record with an operation in flight",
                extra={"instance_id": record.instance_id, "claim_operation": record.claim_operation},
            )
            return
        exists = self._resource_exists(record, executor)
        if exists is None:
            report.errors.append(f"{record.instance_id}: provider status unavailable")
            return

        if not exists and record.status in (InstanceStatus.DELETING, InstanceStatus.DELETION_FAILED):
            finding = Finding(
                FindingKind.FINALIZED_DELETION,
                record.instance_id,
                record.resource_name,
                record.service_kind.value,
                f"Provider resource is gone; removed record in status {record.status.value}",
            )
            finding.repaired = self._remove_if_unchanged(record, finding)
            self._report(report, finding)
            return

        owned = self._platform_owns(record.instance_id)
        if exists and not owned:
            self._report(
                report,
                Finding(
                    FindingKind.ORPHANED_RESOURCE,
                    record.instance_id,
                    record.resource_name,
                    record.service_kind.value,
                    "Platform no longer owns this instance; provider resource flagged for deletion",
                ),
            )
        elif not exists and owned:
            finding = Finding(
                FindingKind.STALE_RECORD,
                record.instance_id,
                record.resource_name,
                record.service_kind.value,
                f"Provider resource is missing for record in status {record.status.value}",
            )
            if self.policy.mark_stale_records_failed and record.status is not InstanceStatus.PROVISIONING_FAILED:
                repaired = copy.deepcopy(record)
                repaired.status = InstanceStatus.PROVISIONING_FAILED
                repaired.last_error = "Provider resource missing during reconciliation"
                if self._record_store.update_if(repaired, unchanged_since(record)):
                    finding.repaired = True
                else:
                    finding.detail = f"{finding.detail}; record changed during the sweep and was left alone"
            self._report(report, finding)
        elif not exists and not owned:
            finding = Finding(
                FindingKind.ABANDONED_RECORD,
                record.instance_id,
                record.resource_name,
                record.service_kind.value,
                "Provider resource and platform ownership are both gone",
            )
            if self.policy.remove_abandoned_records:
                finding.repaired = self._remove_if_unchanged(record, finding)
            self._report(report, finding)

    def _remove_if_unchanged(self, record: InstanceRecord, finding: Finding) -> bool:
        if self._record_store.delete_if(record.instance_id, unchanged_since(record)):
            return True
        finding.detail = f"{finding.detail}; record changed during the sweep and was left alone"
        return False

    def _resource_exists(self, record: InstanceRecord, executor: ThreadPoolExecutor) -> Optional[bool]:
        plan = self._catalog.fetch_plan(record.plan_id)
        adapter = self._adapter_factory.for_plan(plan)
        timeout = self._config.provider.timeout_seconds
        # the adapter may annotate the record; keep the stored copy untouched
        future: Future = executor.submit(adapter.check_status, copy.deepcopy(record))
        try:
            result = future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            LOGGER.warning(
                "Provider status check timed out during reconciliation",
                extra={"instance_id": record.instance_id, "timeout": timeout},
            )
            return None
        if result.error is None:
            return True
        if result.error.kind is ProviderErrorKind.NOT_FOUND:
            return False
        LOGGER.warning(
            "Provider status check failed during reconciliation",
            extra={"instance_id": record.instance_id, "error": str(result.error)},
        )
        return None

    def _platform_owns(self, instance_id: str) -> bool:
        if self._platform_client is None:
            return True
        return self._platform_client.instance_exists(instance_id)

    def _find_untracked(
        self, known_ids: Set[str], known_names: Set[str], report: ReconciliationReport
    ) -> None:
        for inventory in self._inventories:
            try:
                resources = inventory.list_resources()
            except (ClientError, BotoCoreError) as exc:
                error = provider_error_from_exception(exc)
                LOGGER.warning(
                    "Unable to list provider resources",
                    extra={"inventory": inventory.__class__.__name__, "error": str(error)},
                )
                report.errors.append(f"{inventory.__class__.__name__}: {error}")
                continue
            for resource in resources:
                if resource.instance_id in known_ids or resource.name in known_names:
                    continue
                self._report(
                    report,
                    Finding(
                        FindingKind.UNTRACKED_RESOURCE,
                        resource.instance_id,
                        resource.name,
                        resource.service_kind.value,
                        "Broker-managed provider resource has no matching record; needs manual review",
                    ),
                )

    def _report(self, report: ReconciliationReport, finding: Finding) -> None:
        report.findings.append(finding)
        LOGGER.warning(
            "Reconciliation finding",
            extra={
                "kind": finding.kind.value,
                "instance_id": finding.instance_id,
                "resource_name": finding.resource_name,
                "repaired": finding.repaired,
            },
        )
        self._audit_publisher.publish(
            finding.instance_id or finding.resource_name or "",
            AuditAction.RECONCILE,
            AuditOutcome.SUCCESS if finding.repaired else AuditOutcome.ACCEPTED,
            {"finding": finding.kind.value, "resourceName": finding.resource_name, "detail": finding.detail},
        )


__all__ = [
    "FindingKind",
    "Finding",
    "ReconciliationReport",
    "ProviderResource",
    "ResourceInventory",
    "RDSInventory",
    "ElastiCacheInventory",
    "PlatformClient",
    "CloudControllerClient",
    "ReconciliationSweeper",
]
