"""Shared-tenant RDS: databases and logins inside a long-lived shared server."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
)

from ...errors import ProviderError, ProviderErrorKind
from ...services.catalog import Plan
from ...services.records import InstanceRecord, InstanceStatus
from .base import AdapterResult, BindResult, ProviderAdapter, build_uri, missing_resource_status

LOGGER = logging.getLogger(__name__)

EngineFactory = Callable[[str], Engine]

_EXISTS_QUERIES = {
    "postgres": "SELECT 1 FROM pg_database WHERE datname = :name",
    "mysql": "SELECT 1 FROM information_schema.schemata WHERE schema_name = :name",
}


def shared_pool_error(exc: SQLAlchemyError) -> ProviderError:
    message = str(getattr(exc, "orig", None) or exc)
    if isinstance(exc, (OperationalError, InterfaceError)):
        return ProviderError(ProviderErrorKind.PROVIDER_UNAVAILABLE, message)
    if isinstance(exc, (IntegrityError, ProgrammingError)):
        if "exists" in message.lower():
            return ProviderError(ProviderErrorKind.CONFLICT, message)
        return ProviderError(ProviderErrorKind.INVALID_PARAMETERS, message)
    return ProviderError(ProviderErrorKind.PROVIDER_UNAVAILABLE, message)


class SharedRDSAdapter(ProviderAdapter):
    """Provision a logical database inside a shared RDS pool.

    Every operation completes synchronously. Deleting an instance drops only
    its database and login; the pool itself is never touched.
    """

    def __init__(self, plan: Plan, pool_url: str, engine_factory: EngineFactory) -> None:
        super().__init__(plan)
        self._pool_url = pool_url
        self._engine_factory = engine_factory

    @property
    def dialect(self) -> str:
        return "mysql" if self.plan.engine in ("mysql", "mariadb") else "postgres"

    def _engine(self) -> Engine:
        return self._engine_factory(self._pool_url)

    def _execute(self, statements: List[str], params: Optional[Dict[str, Any]] = None) -> None:
        engine = self._engine()
        with engine.execution_options(isolation_level="AUTOCOMMIT").connect() as conn:
            for statement in statements:
                if params and ":" in statement:
                    conn.execute(text(statement), params)
                else:
                    conn.execute(text(statement))

    def _quote(self, name: str) -> str:
        return self._engine().dialect.identifier_preparer.quote(name)

    def _create_statements(self, record: InstanceRecord, password: str) -> List[str]:
        database = self._quote(record.database_name)
        user = self._quote(record.username)
        if self.dialect == "mysql":
            return [
                f"CREATE DATABASE {database}",
                f"CREATE USER '{record.username}'@'%' IDENTIFIED BY '{password}'",
                f"GRANT ALL PRIVILEGES ON {database}.* TO '{record.username}'@'%'",
            ]
        return [
            f"CREATE USER {user} WITH PASSWORD '{password}'",
            f"GRANT {user} TO CURRENT_USER",
            f"CREATE DATABASE {database} WITH OWNER {user}",
            f"REVOKE ALL ON DATABASE {database} FROM PUBLIC",
        ]

    def _drop_statements(self, record: InstanceRecord) -> List[str]:
        database = self._quote(record.database_name)
        if self.dialect == "mysql":
            return [
                f"DROP DATABASE IF EXISTS {database}",
                f"DROP USER IF EXISTS '{record.username}'@'%'",
            ]
        return [
            "SELECT pg_terminate_backend(pid) FROM pg_stat_activity WHERE datname = :name",
            f"DROP DATABASE IF EXISTS {database}",
            f"DROP ROLE IF EXISTS {self._quote(record.username)}",
        ]

    def _endpoint(self) -> Dict[str, Any]:
        url = self._engine().url
        default_port = 3306 if self.dialect == "mysql" else 5432
        return {"host": url.host, "port": url.port or default_port}

    def create_instance(self, record: InstanceRecord, password: str) -> AdapterResult:
        LOGGER.info(
            "Creating database in shared pool",
            extra={"instance_id": record.instance_id, "pool": self.plan.shared_pool},
        )
        try:
            self._execute(self._create_statements(record, password))
        except SQLAlchemyError as exc:
            error = shared_pool_error(exc)
            LOGGER.error(
                "Shared pool create failed",
                extra={"instance_id": record.instance_id, "error": str(error)},
            )
            return AdapterResult(InstanceStatus.PROVISIONING_FAILED, error)
        endpoint = self._endpoint()
        record.resource_name = record.database_name
        record.host = endpoint["host"]
        record.port = endpoint["port"]
        return AdapterResult(InstanceStatus.READY)

    def modify_instance(self, record: InstanceRecord) -> AdapterResult:
        # shared databases have no provider-side settings to change
        LOGGER.info("Modify on shared instance is a no-op", extra={"instance_id": record.instance_id})
        return AdapterResult(InstanceStatus.READY)

    def check_status(self, record: InstanceRecord) -> AdapterResult:
        try:
            engine = self._engine()
            with engine.connect() as conn:
                row = conn.execute(
                    text(_EXISTS_QUERIES[self.dialect]), {"name": record.database_name}
                ).first()
        except SQLAlchemyError as exc:
            error = shared_pool_error(exc)
            LOGGER.warning(
                "Shared pool status check failed",
                extra={"instance_id": record.instance_id, "error": str(error)},
            )
            return AdapterResult(record.status, error)
        if row is None:
            return AdapterResult(
                missing_resource_status(record),
                ProviderError(
                    ProviderErrorKind.NOT_FOUND,
                    f"Database {record.database_name} does not exist in pool {self.plan.shared_pool}",
                ),
            )
        if record.status is InstanceStatus.DELETING:
            return AdapterResult(InstanceStatus.DELETING)
        return AdapterResult(InstanceStatus.READY)

    def bind_to_consumer(self, record: InstanceRecord, password: str) -> BindResult:
        if not record.host:
            endpoint = self._endpoint()
            record.host = endpoint["host"]
            record.port = endpoint["port"]
        if record.status in (InstanceStatus.REQUESTED, InstanceStatus.PROVISIONING):
            record.status = InstanceStatus.READY

        credentials = {
            "db_type": self.plan.engine,
            "host": record.host or "",
            "port": str(record.port),
            "name": record.database_name or "",
            "username": record.username or "",
            "password": password,
        }
        credentials["uri"] = build_uri(
            self.dialect,
            credentials["username"],
            password,
            credentials["host"],
            record.port,
            credentials["name"],
        )
        return BindResult(credentials)

    def delete_instance(self, record: InstanceRecord) -> AdapterResult:
        LOGGER.info(
            "Dropping database from shared pool",
            extra={"instance_id": record.instance_id, "pool": self.plan.shared_pool},
        )
        try:
            self._execute(self._drop_statements(record), {"name": record.database_name})
        except SQLAlchemyError as exc:
            error = shared_pool_error(exc)
            LOGGER.error(
                "Shared pool delete failed",
                extra={"instance_id": record.instance_id, "error": str(error)},
            )
            return AdapterResult(InstanceStatus.DELETION_FAILED, error)
        return AdapterResult(InstanceStatus.DELETED)


__all__ = ["SharedRDSAdapter", "EngineFactory", "shared_pool_error"]
