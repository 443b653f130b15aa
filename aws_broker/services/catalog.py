"""Read-only service catalog: services and the plans that parameterize them."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from ..errors import NotFoundError
from .records import ServiceKind

LOGGER = logging.getLogger(__name__)


class Plan(BaseModel):
    """A provisioning template selected by the caller at creation."""

    id: str
    name: str
    service_id: str = ""
    service_kind: ServiceKind = ServiceKind.RDS
    shared: bool = Field(False, description="Provision inside a shared pool instead of a dedicated resource")
    engine: str = "postgres"
    approved_major_versions: List[str] = Field(default_factory=list)
    default_version: Optional[str] = None
    instance_class: Optional[str] = None
    allocated_storage: int = Field(10, ge=1)
    max_storage_gb: int = Field(1024, ge=1)
    node_type: Optional[str] = None
    num_cache_clusters: int = Field(2, ge=1)
    shared_pool: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_shared_pool(self) -> "Plan":
        if self.shared and not self.shared_pool:
            raise ValueError(f"Shared plan {self.id} must name a shared_pool")
        return self

    @property
    def family(self) -> Tuple[str, bool, str, int]:
        """Plans of one family may replace each other through modify.

        Redis plans with a different node count are separate families; a
        modify cannot add or remove replicas.
        """
        nodes = self.num_cache_clusters if self.service_kind is ServiceKind.REDIS else 0
        return (self.service_kind.value, self.shared, self.engine, nodes)

    def check_version(self, version: str) -> bool:
        """Return True when ``version`` is allowed by the plan.

        Matching is on the major version so that ``"15.4"`` is accepted by a
        plan approving ``"15"``.
        """
        if not self.approved_major_versions:
            return True
        for approved in self.approved_major_versions:
            if version == approved or version.startswith(f"{approved}."):
                return True
        return False


class Service(BaseModel):
    id: str
    name: str
    kind: ServiceKind
    plans: List[Plan] = Field(default_factory=list)

    @model_validator(mode="after")
    def _inherit_service_fields(self) -> "Service":
        for plan in self.plans:
            plan.service_id = self.id
            plan.service_kind = self.kind
            if plan.shared and self.kind is not ServiceKind.RDS:
                raise ValueError(f"Plan {plan.id}: only RDS plans may be shared")
        return self


class Catalog(BaseModel):
    services: List[Service] = Field(default_factory=list)

    def fetch_plan(self, plan_id: str) -> Plan:
        for service in self.services:
            for plan in service.plans:
                if plan.id == plan_id:
                    return plan
        raise NotFoundError(f"Plan {plan_id} not found")

    def fetch_service(self, service_id: str) -> Service:
        for service in self.services:
            if service.id == service_id:
                return service
        raise NotFoundError(f"Service {service_id} not found")

    def service_for_plan(self, plan: Plan) -> Service:
        return self.fetch_service(plan.service_id)


def load_catalog(path: str) -> Catalog:
    """Load the catalog from a JSON file."""

    catalog_path = Path(path)
    LOGGER.info("Loading service catalog", extra={"path": str(catalog_path)})
    with catalog_path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return Catalog.model_validate(payload)


__all__ = ["Plan", "Service", "Catalog", "load_catalog"]
