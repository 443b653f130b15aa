"""Tag generation for provider resources."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Protocol

LOGGER = logging.getLogger(__name__)


class TagAction(str, Enum):
    CREATE = "Created"
    UPDATE = "Updated"


@dataclass(frozen=True)
class ResourceGUIDs:
    instance_guid: str
    space_guid: str = ""
    organization_guid: str = ""


class TagManager(Protocol):
    def generate_tags(
        self,
        action: TagAction,
        service_name: str,
        plan_name: str,
        resource_guids: ResourceGUIDs,
        is_update: bool,
    ) -> Dict[str, str]:
        ...


class BrokerTagManager:
    """Produce the standard tag set applied to every broker-managed resource."""

    def __init__(self, broker_name: str = "AWS broker", environment: Optional[str] = None) -> None:
        self._broker_name = broker_name
        self._environment = environment

    def generate_tags(
        self,
        action: TagAction,
        service_name: str,
        plan_name: str,
        resource_guids: ResourceGUIDs,
        is_update: bool,
    ) -> Dict[str, str]:
        tags: Dict[str, str] = {
            "broker": self._broker_name,
            "Service offering name": service_name,
            "Service plan name": plan_name,
            "Instance GUID": resource_guids.instance_guid,
        }
        if resource_guids.space_guid:
            tags["Space GUID"] = resource_guids.space_guid
        if resource_guids.organization_guid:
            tags["Organization GUID"] = resource_guids.organization_guid
        if self._environment:
            tags["environment"] = self._environment
        tags["client"] = "Cloud Foundry"
        if is_update:
            tags["last-action"] = TagAction.UPDATE.value
        else:
            tags["last-action"] = action.value
        LOGGER.debug("Generated resource tags", extra={"instance_id": resource_guids.instance_guid})
        return tags


def merge_tags(plan_tags: Dict[str, str], request_tags: Dict[str, str]) -> Dict[str, str]:
    """Plan tags first, request tags second; request tags win on collision."""

    merged = dict(plan_tags)
    merged.update(request_tags)
    return merged


__all__ = ["TagAction", "ResourceGUIDs", "TagManager", "BrokerTagManager", "merge_tags"]
