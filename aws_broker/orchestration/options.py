"""Parsing and validation of the raw option bytes sent with broker requests."""
from __future__ import annotations

import json
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..services.catalog import Plan
from ..services.records import ServiceKind


def _version_error(version: str, plan: Plan) -> ValidationError:
    approved = ", ".join(plan.approved_major_versions)
    return ValidationError(
        f"{version} is not a supported major version; major version must be one of: {approved}"
    )


class RedisOptions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    engine_version: Optional[str] = Field(None, alias="engineVersion")

    def validate_for(self, plan: Plan) -> None:
        if self.engine_version and not plan.check_version(self.engine_version):
            raise _version_error(self.engine_version, plan)


class RDSOptions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: Optional[str] = None
    storage: Optional[int] = None
    enable_functions: Optional[bool] = None

    def validate_for(self, plan: Plan) -> None:
        if self.version and not plan.check_version(self.version):
            raise _version_error(self.version, plan)
        if self.storage is not None:
            if self.storage < 1:
                raise ValidationError("storage must be a positive number of gigabytes")
            if self.storage > plan.max_storage_gb:
                raise ValidationError(
                    f"Invalid storage {self.storage}; must be no greater than {plan.max_storage_gb}"
                )
            if plan.shared:
                raise ValidationError("storage cannot be set on shared instances")
        if self.enable_functions and (plan.shared or plan.engine != "mysql"):
            raise ValidationError("enable_functions is only supported on dedicated MySQL instances")
        if self.version and plan.shared:
            raise ValidationError("version cannot be set on shared instances")

    @property
    def engine_version(self) -> Optional[str]:
        return self.version


InstanceOptions = Union[RDSOptions, RedisOptions]


def parse_options(raw: Optional[bytes], plan: Plan) -> InstanceOptions:
    """Decode and validate request options against ``plan``.

    Empty input yields default options. Malformed JSON, wrong types and
    values the plan does not allow all raise ``ValidationError`` before any
    provider call is made.
    """
    model = RedisOptions if plan.service_kind is ServiceKind.REDIS else RDSOptions
    payload: Dict[str, Any] = {}
    if raw:
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError(f"Invalid parameters. Error: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Invalid parameters. Error: options must be a JSON object")
    try:
        options = model.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid parameters. Error: {exc}") from exc
    options.validate_for(plan)
    return options


__all__ = ["RedisOptions", "RDSOptions", "InstanceOptions", "parse_options"]
