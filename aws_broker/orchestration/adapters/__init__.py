"""
Adapter selection: one adapter per plan, chosen once at request entry.

Usage:
    factory = AdapterFactory(settings)
    adapter = factory.for_plan(plan)
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from ...config import AppConfig
from ...errors import InternalError
from ...services.catalog import Plan
from ...services.records import ServiceKind
from .base import (
    AdapterResult,
    BindResult,
    Operation,
    ProviderAdapter,
    build_uri,
    missing_resource_status,
    provider_error_from_exception,
)
from .elasticache import DedicatedRedisAdapter
from .noop import NoopAdapter
from .rds import DedicatedRDSAdapter
from .shared import EngineFactory, SharedRDSAdapter

LOGGER = logging.getLogger(__name__)


class AdapterFactory:
    """Build provider adapters with explicitly injected provider clients."""

    def __init__(
        self,
        config: AppConfig,
        rds_client: Any = None,
        elasticache_client: Any = None,
        engine_factory: Optional[EngineFactory] = None,
    ) -> None:
        self._config = config
        self._rds_client = rds_client
        self._elasticache_client = elasticache_client
        self._engine_factory = engine_factory or self._cached_engine
        self._engines: Dict[str, Engine] = {}
        self._lock = threading.Lock()

    @property
    def provider_enabled(self) -> bool:
        return self._config.provider.enabled and not self._config.is_test_environment

    def _boto_config(self) -> Config:
        provider = self._config.provider
        return Config(
            region_name=self._config.region,
            connect_timeout=provider.connect_timeout,
            read_timeout=provider.read_timeout,
            retries={"max_attempts": provider.max_attempts, "mode": "standard"},
        )

    @property
    def rds_client(self) -> Any:
        with self._lock:
            if self._rds_client is None:
                self._rds_client = boto3.client("rds", config=self._boto_config())
            return self._rds_client

    @property
    def elasticache_client(self) -> Any:
        with self._lock:
            if self._elasticache_client is None:
                self._elasticache_client = boto3.client("elasticache", config=self._boto_config())
            return self._elasticache_client

    def _cached_engine(self, url: str) -> Engine:
        with self._lock:
            engine = self._engines.get(url)
            if engine is None:
                provider = self._config.provider
                engine = create_engine(
                    url,
                    pool_pre_ping=True,
                    pool_size=2,
                    max_overflow=2,
                    pool_timeout=provider.timeout_seconds,
                    connect_args={"connect_timeout": provider.connect_timeout},
                )
                self._engines[url] = engine
            return engine

    def for_plan(self, plan: Plan) -> ProviderAdapter:
        """Return the adapter responsible for ``plan``.

        Raises:
            InternalError: a shared plan names a pool that is not configured
        """
        if not self.provider_enabled:
            return NoopAdapter(plan)
        if plan.shared:
            pool_url = self._config.shared_pools.get(plan.shared_pool or "")
            if not pool_url:
                raise InternalError(f"Shared pool '{plan.shared_pool}' is not configured")
            return SharedRDSAdapter(plan, pool_url, self._engine_factory)
        if plan.service_kind is ServiceKind.REDIS:
            return DedicatedRedisAdapter(plan, self._config.provider, self.elasticache_client)
        return DedicatedRDSAdapter(plan, self._config.provider, self.rds_client)

    def dispose(self) -> None:
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()


__all__ = [
    "AdapterFactory",
    "AdapterResult",
    "BindResult",
    "Operation",
    "ProviderAdapter",
    "DedicatedRDSAdapter",
    "DedicatedRedisAdapter",
    "SharedRDSAdapter",
    "NoopAdapter",
    "build_uri",
    "missing_resource_status",
    "provider_error_from_exception",
]
