from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from aws_broker.config import AppConfig
from aws_broker.errors import ProviderError, ProviderErrorKind
from aws_broker.events.models import BrokerRequest
from aws_broker.orchestration.adapters import AdapterResult, BindResult, Operation, ProviderAdapter
from aws_broker.orchestration.lifecycle import LifecycleOrchestrator
from aws_broker.services.catalog import Catalog, Plan, load_catalog
from aws_broker.services.credentials import CredentialCodec
from aws_broker.services.record_store import InMemoryRecordStore
from aws_broker.services.records import InstanceRecord, InstanceStatus
from aws_broker.services.tags import BrokerTagManager

ROOT = Path(__file__).resolve().parents[1]

SHARED_PSQL_PLAN = "da91e15c-98c9-46a9-b114-02b8d28062c6"
MEDIUM_PSQL_PLAN = "332e0168-6969-4bd7-b07f-29f08c4bf78d"
LARGE_PSQL_PLAN = "9fc4d3b3-8f0b-4c1e-8a43-6e1a1cb6f1cb"
MYSQL_PLAN = "0b7a4a0b-6c39-4cfe-9f39-13c8d0a0e3f6"
REDIS_DEV_PLAN = "475e36bf-387f-44c1-9b81-575fec2ee443"
REDIS_3NODE_PLAN = "a0f5e2c4-4b7d-4c8e-9f1a-2d3b4c5e6f70"

ENCRYPTION_KEY = "0123456789abcdef0123456789abcdef"


class FakeAdapter(ProviderAdapter):
    """Scriptable adapter that records every call it receives."""

    def __init__(self, plan: Plan, async_operations=frozenset()) -> None:
        super().__init__(plan)
        self.async_operations = frozenset(async_operations)
        self.calls: List[str] = []
        self.create_result = AdapterResult(InstanceStatus.PROVISIONING)
        self.modify_result = AdapterResult(InstanceStatus.MODIFYING)
        self.status_result = AdapterResult(InstanceStatus.READY)
        self.delete_result = AdapterResult(InstanceStatus.DELETING)
        self.bind_error: Optional[ProviderError] = None
        self.bind_status: Optional[InstanceStatus] = None
        self.seen_pending: List[Dict] = []
        self.hang = None

    def _maybe_hang(self) -> None:
        if self.hang is not None:
            self.hang.wait(5)

    def create_instance(self, record: InstanceRecord, password: str) -> AdapterResult:
        self.calls.append("create")
        self._maybe_hang()
        record.resource_name = f"res-{record.instance_id}"
        return self.create_result

    def modify_instance(self, record: InstanceRecord) -> AdapterResult:
        self.calls.append("modify")
        self.seen_pending.append(dict(record.pending_changes))
        self._maybe_hang()
        return self.modify_result

    def check_status(self, record: InstanceRecord) -> AdapterResult:
        self.calls.append("check_status")
        self._maybe_hang()
        return self.status_result

    def bind_to_consumer(self, record: InstanceRecord, password: str) -> BindResult:
        self.calls.append("bind")
        if self.bind_error is not None:
            return BindResult(error=self.bind_error)
        if self.bind_status is not None:
            record.status = self.bind_status
        record.host = record.host or "db.example.internal"
        record.port = record.port or 5432
        return BindResult(
            {
                "host": record.host,
                "port": str(record.port),
                "name": record.database_name or "",
                "username": record.username or "",
                "password": password,
                "uri": f"postgres://{record.username}:{password}@{record.host}:{record.port}/{record.database_name}",
            }
        )

    def delete_instance(self, record: InstanceRecord) -> AdapterResult:
        self.calls.append("delete")
        self._maybe_hang()
        return self.delete_result


class StubAdapterFactory:
    def __init__(self, adapter: FakeAdapter) -> None:
        self.adapter = adapter
        self.plans: List[str] = []
        self.provider_enabled = True

    def for_plan(self, plan: Plan) -> FakeAdapter:
        self.plans.append(plan.id)
        self.adapter.plan = plan
        return self.adapter

    def dispose(self) -> None:
        pass


@pytest.fixture
def settings() -> AppConfig:
    return AppConfig(
        environment="test",
        encryption_key=ENCRYPTION_KEY,
        catalog_file=str(ROOT / "catalog.json"),
        provider={"timeout_seconds": 2},
    )


@pytest.fixture
def catalog() -> Catalog:
    return load_catalog(str(ROOT / "catalog.json"))


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def codec() -> CredentialCodec:
    return CredentialCodec(ENCRYPTION_KEY)


@pytest.fixture
def audit_publisher() -> MagicMock:
    return MagicMock()


@pytest.fixture
def fake_adapter(catalog: Catalog) -> FakeAdapter:
    return FakeAdapter(
        catalog.fetch_plan(MEDIUM_PSQL_PLAN),
        async_operations={Operation.CREATE, Operation.MODIFY, Operation.DELETE},
    )


@pytest.fixture
def adapter_factory(fake_adapter: FakeAdapter) -> StubAdapterFactory:
    return StubAdapterFactory(fake_adapter)


@pytest.fixture
def orchestrator(settings, catalog, record_store, codec, adapter_factory, audit_publisher):
    orchestrator = LifecycleOrchestrator(
        settings,
        catalog,
        record_store,
        codec,
        BrokerTagManager(environment="test"),
        adapter_factory,
        audit_publisher,
    )
    yield orchestrator
    orchestrator.shutdown()


def make_request(instance_id: str = "inst-1", plan_id: str = MEDIUM_PSQL_PLAN, raw: bytes = b"", **kwargs) -> BrokerRequest:
    return BrokerRequest(
        instance_id=instance_id,
        plan_id=plan_id,
        organization_id=kwargs.pop("organization_id", "org-1"),
        space_id=kwargs.pop("space_id", "space-1"),
        raw_parameters=raw,
        **kwargs,
    )


def unavailable(message: str = "boom") -> ProviderError:
    return ProviderError(ProviderErrorKind.PROVIDER_UNAVAILABLE, message)
