"""FastAPI routes implementing the service-broker protocol surface."""
from __future__ import annotations

import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..errors import BrokerError, NotFoundError, ResponseStatus
from ..events.models import BrokerRequest, BrokerResponse
from ..orchestration.adapters import Operation
from ..orchestration.lifecycle import LifecycleOrchestrator
from ..orchestration.reconciler import ReconciliationSweeper
from ..services.catalog import Catalog

router = APIRouter()

_STATUS_CODES = {
    ResponseStatus.ACCEPTED: status.HTTP_202_ACCEPTED,
    ResponseStatus.SUCCESS: status.HTTP_200_OK,
    ResponseStatus.CLIENT_ERROR: status.HTTP_400_BAD_REQUEST,
    ResponseStatus.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ResponseStatus.CONFLICT: status.HTTP_409_CONFLICT,
    ResponseStatus.SERVER_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class ProvisionBody(BaseModel):
    service_id: str = ""
    plan_id: str
    organization_guid: str = ""
    space_guid: str = ""
    parameters: Optional[Dict[str, Any]] = None


class UpdateBody(BaseModel):
    service_id: str = ""
    plan_id: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    previous_values: Dict[str, Any] = Field(default_factory=dict)


class BindBody(BaseModel):
    service_id: str = ""
    plan_id: str = ""
    parameters: Optional[Dict[str, Any]] = None


def get_orchestrator(request: Request) -> LifecycleOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise RuntimeError("LifecycleOrchestrator dependency not configured")
    return orchestrator


def get_sweeper(request: Request) -> ReconciliationSweeper:
    sweeper = getattr(request.app.state, "sweeper", None)
    if sweeper is None:
        raise RuntimeError("ReconciliationSweeper dependency not configured")
    return sweeper


def get_catalog(request: Request) -> Catalog:
    return request.app.state.catalog


def _raw(parameters: Optional[Dict[str, Any]]) -> bytes:
    return json.dumps(parameters).encode("utf-8") if parameters else b""


def _to_http(
    response: BrokerResponse,
    *,
    success_code: int = status.HTTP_200_OK,
    not_found_code: int = status.HTTP_404_NOT_FOUND,
) -> JSONResponse:
    if response.status is ResponseStatus.SUCCESS:
        code = success_code
    elif response.status is ResponseStatus.NOT_FOUND:
        code = not_found_code
    else:
        code = _STATUS_CODES[response.status]
    if response.is_error:
        body: Dict[str, Any] = {"description": response.description}
    elif response.status is ResponseStatus.ACCEPTED:
        body = {"operation": response.payload.get("operation", "")}
    else:
        body = {key: value for key, value in response.payload.items() if key != "status"}
    return JSONResponse(status_code=code, content=body)


def _async_required(
    orchestrator: LifecycleOrchestrator,
    plan_id: str,
    operation: Operation,
    accepts_incomplete: bool,
    instance_id: Optional[str] = None,
) -> Optional[JSONResponse]:
    if accepts_incomplete:
        return None
    try:
        required = orchestrator.async_operation_required(plan_id, operation, instance_id=instance_id)
    except NotFoundError:
        # unknown instance; the operation itself reports it
        return None
    except BrokerError as exc:
        return JSONResponse(
            status_code=_STATUS_CODES[exc.response_status], content={"description": str(exc)}
        )
    if not required:
        return None
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "AsyncRequired",
            "description": "This service plan requires client support for asynchronous service operations.",
        },
    )


@router.get("/catalog")
def catalog(catalog: Catalog = Depends(get_catalog)) -> dict:
    return {
        "services": [
            {
                "id": service.id,
                "name": service.name,
                "bindable": True,
                "plan_updateable": True,
                "plans": [{"id": plan.id, "name": plan.name} for plan in service.plans],
            }
            for service in catalog.services
        ]
    }


@router.put("/service_instances/{instance_id}")
def provision(
    instance_id: str,
    body: ProvisionBody,
    accepts_incomplete: bool = Query(False),
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    rejected = _async_required(orchestrator, body.plan_id, Operation.CREATE, accepts_incomplete)
    if rejected is not None:
        return rejected
    response = orchestrator.create(
        BrokerRequest(
            instance_id=instance_id,
            plan_id=body.plan_id,
            service_id=body.service_id,
            organization_id=body.organization_guid,
            space_id=body.space_guid,
            raw_parameters=_raw(body.parameters),
        )
    )
    return _to_http(response, success_code=status.HTTP_201_CREATED)


@router.patch("/service_instances/{instance_id}")
def update(
    instance_id: str,
    body: UpdateBody,
    accepts_incomplete: bool = Query(False),
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    plan_id = body.plan_id or body.previous_values.get("plan_id", "")
    rejected = _async_required(
        orchestrator, plan_id, Operation.MODIFY, accepts_incomplete, instance_id=instance_id
    )
    if rejected is not None:
        return rejected
    response = orchestrator.modify(
        BrokerRequest(
            instance_id=instance_id,
            plan_id=body.plan_id or "",
            service_id=body.service_id,
            raw_parameters=_raw(body.parameters),
        )
    )
    return _to_http(response)


@router.delete("/service_instances/{instance_id}")
def deprovision(
    instance_id: str,
    plan_id: str = Query(""),
    service_id: str = Query(""),
    accepts_incomplete: bool = Query(False),
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    rejected = _async_required(
        orchestrator, plan_id, Operation.DELETE, accepts_incomplete, instance_id=instance_id
    )
    if rejected is not None:
        return rejected
    response = orchestrator.delete(
        BrokerRequest(instance_id=instance_id, plan_id=plan_id, service_id=service_id)
    )
    return _to_http(response, not_found_code=status.HTTP_410_GONE)


@router.get("/service_instances/{instance_id}/last_operation")
def last_operation(
    instance_id: str,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    response = orchestrator.last_operation(BrokerRequest(instance_id=instance_id))
    return _to_http(response, not_found_code=status.HTTP_410_GONE)


@router.put("/service_instances/{instance_id}/service_bindings/{binding_id}")
def bind(
    instance_id: str,
    binding_id: str,
    body: BindBody,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    response = orchestrator.bind(
        BrokerRequest(
            instance_id=instance_id,
            plan_id=body.plan_id,
            service_id=body.service_id,
            raw_parameters=_raw(body.parameters),
            binding_id=binding_id,
        )
    )
    return _to_http(response, success_code=status.HTTP_201_CREATED)


@router.delete("/service_instances/{instance_id}/service_bindings/{binding_id}")
def unbind(instance_id: str, binding_id: str) -> dict:
    # credentials are derived from the instance; nothing is stored per binding
    return {}


@router.post("/admin/reconcile")
def reconcile(sweeper: ReconciliationSweeper = Depends(get_sweeper)) -> dict:
    return sweeper.sweep().to_dict()


__all__ = ["router", "get_orchestrator", "get_sweeper"]
