"""Instance record stores.

The store offers create, read, update, delete and scan. Plain ``update`` and
``delete`` are last-write-wins; ``update_if`` and ``delete_if`` only apply when
the stored record still satisfies a condition, which is how callers claim and
release the single-writer gate of an instance.
"""
from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List

from redis import Redis, RedisError
from redis.exceptions import WatchError

from ..errors import ConflictError, InternalError, NotFoundError
from .records import InstanceRecord, utcnow

LOGGER = logging.getLogger(__name__)

RecordCondition = Callable[[InstanceRecord], bool]


class RecordStore(ABC):
    """Mapping from instance identifier to :class:`InstanceRecord`."""

    @abstractmethod
    def create(self, record: InstanceRecord) -> None:
        """Insert a new record, raising ``ConflictError`` on a duplicate id."""

    @abstractmethod
    def get(self, instance_id: str) -> InstanceRecord:
        """Return the record, raising ``NotFoundError`` when unknown."""

    @abstractmethod
    def update(self, record: InstanceRecord) -> None:
        """Overwrite an existing record."""

    @abstractmethod
    def update_if(self, record: InstanceRecord, condition: RecordCondition) -> bool:
        """Overwrite the record only if ``condition`` holds for the stored copy.

        Returns False when the condition fails; raises ``NotFoundError`` when
        the record is gone.
        """

    @abstractmethod
    def delete(self, instance_id: str) -> None:
        """Remove a record; unknown ids are ignored."""

    @abstractmethod
    def delete_if(self, instance_id: str, condition: RecordCondition) -> bool:
        """Remove the record only if ``condition`` holds for the stored copy.

        An unknown id counts as already removed and returns True.
        """

    @abstractmethod
    def scan(self) -> Iterator[InstanceRecord]:
        """Iterate every stored record."""

    def exists(self, instance_id: str) -> bool:
        try:
            self.get(instance_id)
        except NotFoundError:
            return False
        return True


class RedisRecordStore(RecordStore):
    """Persist instance records as JSON documents in Redis."""

    RECORD_KEY_TEMPLATE = "{prefix}:instance:{instance_id}"
    HISTORY_KEY_TEMPLATE = "{prefix}:instance:{instance_id}:history"
    HISTORY_LIMIT = 50
    # optimistic transaction retries before a contended write gives up
    WATCH_ATTEMPTS = 5

    def __init__(self, redis_client: Redis, key_prefix: str = "aws-broker") -> None:
        self._redis = redis_client
        self._prefix = key_prefix

    def _record_key(self, instance_id: str) -> str:
        return self.RECORD_KEY_TEMPLATE.format(prefix=self._prefix, instance_id=instance_id)

    def _history_key(self, instance_id: str) -> str:
        return self.HISTORY_KEY_TEMPLATE.format(prefix=self._prefix, instance_id=instance_id)

    @staticmethod
    def _decode(instance_id: str, raw: Any) -> InstanceRecord:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Stored record payload is invalid JSON", extra={"instance_id": instance_id})
            raise InternalError(f"Record {instance_id} is corrupt") from exc
        return InstanceRecord.from_dict(payload)

    def create(self, record: InstanceRecord) -> None:
        key = self._record_key(record.instance_id)
        LOGGER.debug("Creating instance record", extra={"instance_id": record.instance_id})
        try:
            created = self._redis.set(key, json.dumps(record.to_dict()), nx=True)
        except RedisError as exc:
            raise InternalError(f"Failed to create record {record.instance_id}: {exc}") from exc
        if not created:
            raise ConflictError(f"Instance {record.instance_id} already exists")
        self._append_history(record)

    def get(self, instance_id: str) -> InstanceRecord:
        try:
            raw = self._redis.get(self._record_key(instance_id))
        except RedisError as exc:
            raise InternalError(f"Failed to read record {instance_id}: {exc}") from exc
        if not raw:
            raise NotFoundError(f"Instance {instance_id} not found")
        return self._decode(instance_id, raw)

    def update(self, record: InstanceRecord) -> None:
        record.touch()
        key = self._record_key(record.instance_id)
        LOGGER.debug(
            "Updating instance record",
            extra={"instance_id": record.instance_id, "status": record.status.value},
        )
        try:
            updated = self._redis.set(key, json.dumps(record.to_dict()), xx=True)
        except RedisError as exc:
            raise InternalError(f"Failed to update record {record.instance_id}: {exc}") from exc
        if not updated:
            raise NotFoundError(f"Instance {record.instance_id} not found")
        self._append_history(record)

    def update_if(self, record: InstanceRecord, condition: RecordCondition) -> bool:
        record.touch()
        key = self._record_key(record.instance_id)
        payload = json.dumps(record.to_dict())
        applied = self._transaction(
            record.instance_id, key, condition, lambda pipe: pipe.set(key, payload), missing_ok=False
        )
        if applied:
            self._append_history(record)
        return applied

    def delete(self, instance_id: str) -> None:
        keys = [self._record_key(instance_id), self._history_key(instance_id)]
        LOGGER.debug("Deleting instance record", extra={"instance_id": instance_id})
        try:
            self._redis.delete(*keys)
        except RedisError as exc:
            raise InternalError(f"Failed to delete record {instance_id}: {exc}") from exc

    def delete_if(self, instance_id: str, condition: RecordCondition) -> bool:
        keys = [self._record_key(instance_id), self._history_key(instance_id)]
        return self._transaction(
            instance_id, keys[0], condition, lambda pipe: pipe.delete(*keys), missing_ok=True
        )

    def _transaction(
        self,
        instance_id: str,
        key: str,
        condition: RecordCondition,
        write: Callable[[Any], Any],
        missing_ok: bool,
    ) -> bool:
        """WATCH ``key``, check ``condition`` on the stored record, then MULTI/EXEC ``write``."""

        try:
            with self._redis.pipeline() as pipe:
                for _ in range(self.WATCH_ATTEMPTS):
                    try:
                        pipe.watch(key)
                        raw = pipe.get(key)
                        if not raw:
                            if missing_ok:
                                return True
                            raise NotFoundError(f"Instance {instance_id} not found")
                        if not condition(self._decode(instance_id, raw)):
                            return False
                        pipe.multi()
                        write(pipe)
                        pipe.execute()
                        return True
                    except WatchError:
                        LOGGER.debug("Record changed during transaction; retrying", extra={"instance_id": instance_id})
                        continue
        except RedisError as exc:
            raise InternalError(f"Failed to write record {instance_id}: {exc}") from exc
        LOGGER.warning("Record write kept conflicting; giving up", extra={"instance_id": instance_id})
        return False

    def scan(self) -> Iterator[InstanceRecord]:
        pattern = self.RECORD_KEY_TEMPLATE.format(prefix=self._prefix, instance_id="*")
        try:
            keys = list(self._redis.scan_iter(pattern))
        except RedisError as exc:
            raise InternalError(f"Failed to scan records: {exc}") from exc
        for key in keys:
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            if key.endswith(":history"):
                continue
            instance_id = key.split(":instance:", 1)[1]
            try:
                yield self.get(instance_id)
            except NotFoundError:
                # deleted between scan and read
                continue

    def history(self, instance_id: str) -> List[Dict[str, Any]]:
        """Return the recorded status transitions, newest first."""

        try:
            entries = self._redis.lrange(self._history_key(instance_id), 0, -1)
        except RedisError as exc:
            raise InternalError(f"Failed to read history for {instance_id}: {exc}") from exc
        return [json.loads(entry) for entry in entries]

    def _append_history(self, record: InstanceRecord) -> None:
        history_key = self._history_key(record.instance_id)
        history_entry = json.dumps({"status": record.status.value, "timestamp": utcnow()})
        try:
            self._redis.lpush(history_key, history_entry)
            self._redis.ltrim(history_key, 0, self.HISTORY_LIMIT - 1)
        except RedisError:
            LOGGER.warning("Failed to append status history", extra={"instance_id": record.instance_id})


class InMemoryRecordStore(RecordStore):
    """Process-local store used in the test environment."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create(self, record: InstanceRecord) -> None:
        with self._lock:
            if record.instance_id in self._records:
                raise ConflictError(f"Instance {record.instance_id} already exists")
            self._records[record.instance_id] = record.to_dict()

    def get(self, instance_id: str) -> InstanceRecord:
        with self._lock:
            data = self._records.get(instance_id)
        if data is None:
            raise NotFoundError(f"Instance {instance_id} not found")
        return InstanceRecord.from_dict(data)

    def update(self, record: InstanceRecord) -> None:
        record.touch()
        with self._lock:
            if record.instance_id not in self._records:
                raise NotFoundError(f"Instance {record.instance_id} not found")
            self._records[record.instance_id] = record.to_dict()

    def update_if(self, record: InstanceRecord, condition: RecordCondition) -> bool:
        record.touch()
        with self._lock:
            data = self._records.get(record.instance_id)
            if data is None:
                raise NotFoundError(f"Instance {record.instance_id} not found")
            if not condition(InstanceRecord.from_dict(data)):
                return False
            self._records[record.instance_id] = record.to_dict()
        return True

    def delete(self, instance_id: str) -> None:
        with self._lock:
            self._records.pop(instance_id, None)

    def delete_if(self, instance_id: str, condition: RecordCondition) -> bool:
        with self._lock:
            data = self._records.get(instance_id)
            if data is None:
                return True
            if not condition(InstanceRecord.from_dict(data)):
                return False
            del self._records[instance_id]
        return True

    def scan(self) -> Iterator[InstanceRecord]:
        with self._lock:
            snapshot = list(self._records.values())
        for data in snapshot:
            yield InstanceRecord.from_dict(data)


__all__ = ["RecordStore", "RedisRecordStore", "InMemoryRecordStore", "RecordCondition"]
