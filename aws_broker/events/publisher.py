"""Publishers for broker audit events."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import pika

from ..config import RabbitMQConfig
from .models import AuditAction, AuditOutcome

LOGGER = logging.getLogger(__name__)


class EventPublisher(Protocol):
    def publish(
        self,
        routing_key: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class RabbitMQPublisher:
    """Utility for publishing JSON messages to the broker events exchange."""

    def __init__(self, config: RabbitMQConfig) -> None:
        self._config = config
        self._parameters = pika.URLParameters(config.url)

    def publish(
        self,
        routing_key: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Publish an event to the shared exchange."""

        connection: Optional[pika.BlockingConnection] = None
        try:
            connection = pika.BlockingConnection(self._parameters)
            channel = connection.channel()
            channel.basic_publish(
                exchange=self._config.exchange,
                routing_key=routing_key,
                body=json.dumps(payload).encode("utf-8"),
                properties=pika.BasicProperties(
                    content_type="application/json",
                    delivery_mode=2,
                    headers=headers or {},
                ),
            )
            LOGGER.debug("Published event", extra={"routing_key": routing_key})
        except Exception:
            LOGGER.exception("Failed to publish event", extra={"routing_key": routing_key})
            raise
        finally:
            if connection and connection.is_open:
                connection.close()


class LoggingPublisher:
    """Fallback publisher used when no message broker is configured."""

    def publish(
        self,
        routing_key: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, Any]] = None,
    ) -> None:
        LOGGER.info("Audit event", extra={"routing_key": routing_key, "event": payload})


class AuditEventPublisher:
    """Publish structured audit events for centralized compliance logging."""

    def __init__(self, publisher: EventPublisher, routing_key: str = "audit.instance.event") -> None:
        self._publisher = publisher
        self._routing_key = routing_key

    def publish(
        self,
        instance_id: str,
        action: AuditAction,
        outcome: AuditOutcome,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "instanceId": instance_id,
            "action": action.value,
            "outcome": outcome.value,
            "details": {key: value for key, value in (details or {}).items() if value is not None},
        }
        try:
            self._publisher.publish(self._routing_key, event)
        except Exception:
            LOGGER.exception(
                "Failed to publish audit event",
                extra={"instance_id": instance_id, "action": action.value},
            )


__all__ = ["EventPublisher", "RabbitMQPublisher", "LoggingPublisher", "AuditEventPublisher"]
