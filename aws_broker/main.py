"""Application entrypoint for the AWS data-store broker."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Tuple

import redis
from fastapi import FastAPI

from .api.routes import router as api_router
from .config import AppConfig, get_settings
from .events.publisher import AuditEventPublisher, EventPublisher, LoggingPublisher, RabbitMQPublisher
from .orchestration.adapters import AdapterFactory
from .orchestration.lifecycle import LifecycleOrchestrator
from .orchestration.reconciler import (
    CloudControllerClient,
    ElastiCacheInventory,
    PlatformClient,
    RDSInventory,
    ReconciliationSweeper,
    ResourceInventory,
)
from .services.catalog import Catalog, load_catalog
from .services.credentials import CredentialCodec
from .services.record_store import InMemoryRecordStore, RecordStore, RedisRecordStore
from .services.tags import BrokerTagManager

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: AppConfig = app.state.settings
    LOGGER.info("Starting AWS broker", extra={"service": settings.service_name, "environment": settings.environment})
    yield
    LOGGER.info("Shutting down AWS broker")
    app.state.orchestrator.shutdown()
    app.state.adapter_factory.dispose()
    if app.state.redis is not None:
        app.state.redis.close()


def build_record_store(settings: AppConfig) -> Tuple[RecordStore, Optional[redis.Redis]]:
    if settings.is_test_environment:
        return InMemoryRecordStore(), None
    redis_client = redis.from_url(settings.redis.url, decode_responses=settings.redis.decode_responses)
    return RedisRecordStore(redis_client, key_prefix=settings.redis.key_prefix), redis_client


def build_audit_publisher(settings: AppConfig) -> AuditEventPublisher:
    publisher: EventPublisher
    if settings.rabbitmq is not None:
        publisher = RabbitMQPublisher(settings.rabbitmq)
    else:
        LOGGER.warning("RabbitMQ not configured; audit events are written to the log")
        publisher = LoggingPublisher()
    return AuditEventPublisher(publisher)


def build_sweeper(
    settings: AppConfig,
    catalog: Catalog,
    record_store: RecordStore,
    adapter_factory: AdapterFactory,
    audit_publisher: AuditEventPublisher,
) -> ReconciliationSweeper:
    platform_client: Optional[PlatformClient] = None
    if settings.platform.api_url and settings.platform.uaa_url:
        platform_client = CloudControllerClient(settings.platform)
    else:
        LOGGER.warning("Platform API not configured; ownership checks assume instances are owned")
    inventories: List[ResourceInventory] = []
    if adapter_factory.provider_enabled:
        inventories = [
            RDSInventory(adapter_factory.rds_client, settings.reconcile),
            ElastiCacheInventory(adapter_factory.elasticache_client, settings.reconcile),
        ]
    return ReconciliationSweeper(
        settings,
        catalog,
        record_store,
        adapter_factory,
        platform_client,
        inventories,
        audit_publisher,
    )


def create_app(settings: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or get_settings()
    logging.basicConfig(level=settings.logging.level, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    catalog = load_catalog(settings.catalog_file)
    record_store, redis_client = build_record_store(settings)
    codec = CredentialCodec(settings.encryption_key.get_secret_value())
    tag_manager = BrokerTagManager(environment=settings.environment)
    adapter_factory = AdapterFactory(settings)
    audit_publisher = build_audit_publisher(settings)
    orchestrator = LifecycleOrchestrator(
        settings, catalog, record_store, codec, tag_manager, adapter_factory, audit_publisher
    )
    sweeper = build_sweeper(settings, catalog, record_store, adapter_factory, audit_publisher)

    app = FastAPI(
        title="AWS Broker",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.include_router(api_router, prefix=settings.api_prefix)

    app.state.settings = settings
    app.state.redis = redis_client
    app.state.catalog = catalog
    app.state.record_store = record_store
    app.state.adapter_factory = adapter_factory
    app.state.audit_publisher = audit_publisher
    app.state.orchestrator = orchestrator
    app.state.sweeper = sweeper

    return app


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run("aws_broker.main:create_app", factory=True, host="0.0.0.0", port=8000, reload=False)
