from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from aws_broker.config import PlatformConfig, ReconcileConfig
from aws_broker.errors import InternalError, ProviderError, ProviderErrorKind
from aws_broker.orchestration.adapters import AdapterResult
from aws_broker.orchestration.reconciler import (
    CloudControllerClient,
    ElastiCacheInventory,
    FindingKind,
    ProviderResource,
    RDSInventory,
    ReconciliationSweeper,
)
from aws_broker.services.records import InstanceRecord, InstanceStatus, ServiceKind

from conftest import MEDIUM_PSQL_PLAN, unavailable

GONE = AdapterResult(
    InstanceStatus.PROVISIONING_FAILED,
    ProviderError(ProviderErrorKind.NOT_FOUND, "no such instance"),
)


class StaticInventory:
    def __init__(self, resources):
        self.resources = resources

    def list_resources(self):
        return list(self.resources)


def _store_record(record_store, instance_id="inst-1", status=InstanceStatus.READY):
    record = InstanceRecord(
        instance_id=instance_id,
        organization_id="org",
        space_id="space",
        service_id="svc",
        plan_id=MEDIUM_PSQL_PLAN,
        service_kind=ServiceKind.RDS,
        status=status,
        resource_name=f"cg-aws-broker-{instance_id}",
    )
    record_store.create(record)
    return record


@pytest.fixture
def platform():
    client = MagicMock()
    client.instance_exists.return_value = True
    return client


def _sweeper(settings, catalog, record_store, adapter_factory, platform, audit_publisher, inventories=(), **policy):
    if policy:
        settings = settings.model_copy(update={"reconcile": ReconcileConfig(**policy)})
    return ReconciliationSweeper(
        settings, catalog, record_store, adapter_factory, platform, inventories, audit_publisher
    )


def test_consistent_record_produces_no_findings(settings, catalog, record_store, adapter_factory, platform, audit_publisher):
    _store_record(record_store)

    report = _sweeper(settings, catalog, record_store, adapter_factory, platform, audit_publisher).sweep()

    assert report.records_checked == 1
    assert report.findings == []
    audit_publisher.publish.assert_not_called()


def test_orphaned_resource_is_flagged_not_deleted(
    settings, catalog, record_store, adapter_factory, fake_adapter, platform, audit_publisher
):
    _store_record(record_store)
    platform.instance_exists.return_value = False

    report = _sweeper(settings, catalog, record_store, adapter_factory, platform, audit_publisher).sweep()

    [finding] = report.findings
    assert finding.kind is FindingKind.ORPHANED_RESOURCE
    assert not finding.repaired
    assert record_store.get("inst-1").status is InstanceStatus.READY
    assert "delete" not in fake_adapter.calls


def test_stale_record_is_reported_by_default(
    settings, catalog, record_store, adapter_factory, fake_adapter, platform, audit_publisher
):
    _store_record(record_store)
    fake_adapter.status_result = GONE

    report = _sweeper(settings, catalog, record_store, adapter_factory, platform, audit_publisher).sweep()

    assert [finding.kind for finding in report.findings] == [FindingKind.STALE_RECORD]
    assert record_store.get("inst-1").status is InstanceStatus.READY


def test_stale_record_marked_failed_when_enabled(
    settings, catalog, record_store, adapter_factory, fake_adapter, platform, audit_publisher
):
    _store_record(record_store)
    fake_adapter.status_result = GONE

    report = _sweeper(
        settings, catalog, record_store, adapter_factory, platform, audit_publisher,
        mark_stale_records_failed=True,
    ).sweep()

    assert report.findings[0].repaired
    assert record_store.get("inst-1").status is InstanceStatus.PROVISIONING_FAILED


def test_abandoned_record_removed_only_when_enabled(
    settings, catalog, record_store, adapter_factory, fake_adapter, platform, audit_publisher
):
    _store_record(record_store)
    fake_adapter.status_result = GONE
    platform.instance_exists.return_value = False

    report = _sweeper(settings, catalog, record_store, adapter_factory, platform, audit_publisher).sweep()
    assert report.findings[0].kind is FindingKind.ABANDONED_RECORD
    assert record_store.exists("inst-1")

    report = _sweeper(
        settings, catalog, record_store, adapter_factory, platform, audit_publisher,
        remove_abandoned_records=True,
    ).sweep()
    assert report.findings[0].repaired
    assert not record_store.exists("inst-1")


def test_failed_deletion_with_absent_resource_is_finalized(
    settings, catalog, record_store, adapter_factory, fake_adapter, platform, audit_publisher
):
    _store_record(record_store, status=InstanceStatus.DELETION_FAILED)
    fake_adapter.status_result = AdapterResult(
        InstanceStatus.DELETED, ProviderError(ProviderErrorKind.NOT_FOUND, "gone")
    )

    report = _sweeper(settings, catalog, record_store, adapter_factory, platform, audit_publisher).sweep()

    assert report.findings[0].kind is FindingKind.FINALIZED_DELETION
    assert not record_store.exists("inst-1")
    platform.instance_exists.assert_not_called()


def test_untracked_resource_needs_manual_review(
    settings, catalog, record_store, adapter_factory, platform, audit_publisher
):
    _store_record(record_store)
    inventory = StaticInventory(
        [
            ProviderResource("cg-aws-broker-inst-1", ServiceKind.RDS, "available", {"Instance GUID": "inst-1"}),
            ProviderResource("cg-aws-broker-ghost", ServiceKind.RDS, "available", {"Instance GUID": "ghost"}),
        ]
    )

    report = _sweeper(
        settings, catalog, record_store, adapter_factory, platform, audit_publisher, [inventory]
    ).sweep()

    [finding] = report.findings
    assert finding.kind is FindingKind.UNTRACKED_RESOURCE
    assert finding.instance_id == "ghost"
    assert finding.resource_name == "cg-aws-broker-ghost"


def test_requested_records_and_transient_errors_are_skipped(
    settings, catalog, record_store, adapter_factory, fake_adapter, platform, audit_publisher
):
    _store_record(record_store, "new", status=InstanceStatus.REQUESTED)
    _store_record(record_store, "busy")
    fake_adapter.status_result = AdapterResult(InstanceStatus.READY, unavailable("throttled"))

    report = _sweeper(settings, catalog, record_store, adapter_factory, platform, audit_publisher).sweep()

    assert report.findings == []
    assert report.errors == ["busy: provider status unavailable"]
    assert fake_adapter.calls == ["check_status"]


def test_stale_repair_skips_record_changed_after_scan(
    settings, catalog, record_store, adapter_factory, fake_adapter, platform, audit_publisher
):
    _store_record(record_store)

    def gone_while_delete_starts(record):
        current = record_store.get(record.instance_id)
        current.claim("delete")
        current.status = InstanceStatus.DELETING
        record_store.update(current)
        return GONE

    fake_adapter.check_status = gone_while_delete_starts

    report = _sweeper(
        settings, catalog, record_store, adapter_factory, platform, audit_publisher,
        mark_stale_records_failed=True,
    ).sweep()

    [finding] = report.findings
    assert finding.kind is FindingKind.STALE_RECORD
    assert not finding.repaired
    assert "left alone" in finding.detail
    record = record_store.get("inst-1")
    assert record.status is InstanceStatus.DELETING
    assert record.claim_operation == "delete"


def test_abandoned_removal_skips_record_changed_after_scan(
    settings, catalog, record_store, adapter_factory, fake_adapter, platform, audit_publisher
):
    _store_record(record_store)
    platform.instance_exists.return_value = False

    def gone_while_modified(record):
        current = record_store.get(record.instance_id)
        current.status = InstanceStatus.MODIFY_FAILED
        record_store.update(current)
        return GONE

    fake_adapter.check_status = gone_while_modified

    report = _sweeper(
        settings, catalog, record_store, adapter_factory, platform, audit_publisher,
        remove_abandoned_records=True,
    ).sweep()

    assert not report.findings[0].repaired
    assert record_store.get("inst-1").status is InstanceStatus.MODIFY_FAILED


def test_claimed_records_are_skipped(
    settings, catalog, record_store, adapter_factory, fake_adapter, platform, audit_publisher
):
    record = InstanceRecord(
        instance_id="inst-1",
        organization_id="org",
        space_id="space",
        service_id="svc",
        plan_id=MEDIUM_PSQL_PLAN,
        service_kind=ServiceKind.RDS,
        status=InstanceStatus.DELETING,
    )
    record.claim("delete")
    record_store.create(record)
    fake_adapter.status_result = GONE

    report = _sweeper(settings, catalog, record_store, adapter_factory, platform, audit_publisher).sweep()

    assert report.findings == []
    assert report.errors == []
    assert fake_adapter.calls == []
    assert record_store.exists("inst-1")


def test_hung_status_check_is_reported_and_sweep_continues(
    settings, catalog, record_store, adapter_factory, fake_adapter, platform, audit_publisher
):
    _store_record(record_store)
    quick = settings.model_copy(
        update={"provider": settings.provider.model_copy(update={"timeout_seconds": 0.1})}
    )
    fake_adapter.hang = threading.Event()
    try:
        report = _sweeper(quick, catalog, record_store, adapter_factory, platform, audit_publisher).sweep()
    finally:
        fake_adapter.hang.set()

    assert report.errors == ["inst-1: provider status unavailable"]
    assert report.finished_at is not None
    assert record_store.get("inst-1").status is InstanceStatus.READY


def test_rds_inventory_filters_by_managed_tag():
    client = MagicMock()
    client.get_paginator.return_value.paginate.return_value = [
        {
            "DBInstances": [
                {
                    "DBInstanceIdentifier": "cg-aws-broker-a",
                    "DBInstanceStatus": "available",
                    "TagList": [{"Key": "broker", "Value": "AWS broker"}, {"Key": "Instance GUID", "Value": "a"}],
                },
                {"DBInstanceIdentifier": "someone-else", "DBInstanceStatus": "available", "TagList": []},
            ]
        }
    ]

    resources = RDSInventory(client, ReconcileConfig()).list_resources()

    assert [resource.name for resource in resources] == ["cg-aws-broker-a"]
    assert resources[0].instance_id == "a"
    client.get_paginator.assert_called_once_with("describe_db_instances")


def test_elasticache_inventory_reads_tags_by_arn():
    client = MagicMock()
    client.get_paginator.return_value.paginate.return_value = [
        {
            "ReplicationGroups": [
                {"ReplicationGroupId": "cg-abc", "Status": "available", "ARN": "arn:abc"},
                {"ReplicationGroupId": "other", "Status": "available", "ARN": "arn:other"},
            ]
        }
    ]
    tags = {
        "arn:abc": [{"Key": "broker", "Value": "AWS broker"}, {"Key": "Instance GUID", "Value": "abc"}],
        "arn:other": [],
    }
    client.list_tags_for_resource.side_effect = lambda ResourceName: {"TagList": tags[ResourceName]}

    resources = ElastiCacheInventory(client, ReconcileConfig()).list_resources()

    assert [resource.name for resource in resources] == ["cg-abc"]
    assert resources[0].service_kind is ServiceKind.REDIS


def _response(status_code, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    return response


@pytest.mark.parametrize("status_code, expected", [(200, True), (404, False)])
def test_cloud_controller_ownership(status_code, expected):
    session = MagicMock()
    session.post.return_value = _response(200, {"access_token": "token", "expires_in": 600})
    session.get.return_value = _response(status_code)
    client = CloudControllerClient(
        PlatformConfig(api_url="https://api.example", uaa_url="https://uaa.example", client_id="broker",
                       client_secret="secret"),
        session=session,
    )

    assert client.instance_exists("inst-1") is expected
    url = session.get.call_args.args[0]
    assert url == "https://api.example/v3/service_instances/inst-1"
    assert session.get.call_args.kwargs["headers"]["Authorization"] == "Bearer token"


def test_cloud_controller_reuses_token_and_surfaces_errors():
    session = MagicMock()
    session.post.return_value = _response(200, {"access_token": "token", "expires_in": 600})
    session.get.return_value = _response(502)
    client = CloudControllerClient(
        PlatformConfig(api_url="https://api.example", uaa_url="https://uaa.example"), session=session
    )

    for _ in range(2):
        with pytest.raises(InternalError):
            client.instance_exists("inst-1")
    assert session.post.call_count == 1
