"""Per-request lifecycle driver for broker-managed data-store instances."""
from __future__ import annotations

import copy
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from ..config import AppConfig
from ..errors import (
    BrokerError,
    ConflictError,
    DecryptionFailed,
    InternalError,
    NotFoundError,
    ProviderError,
    ProviderErrorKind,
    ResponseStatus,
    ValidationError,
)
from ..events.models import AuditAction, AuditOutcome, BrokerRequest, BrokerResponse, LastOperationState
from ..events.publisher import AuditEventPublisher
from ..services.catalog import Catalog, Plan
from ..services.credentials import (
    CredentialCodec,
    generate_database_name,
    generate_password,
    generate_username,
    secret_from_record,
)
from ..services.record_store import RecordStore
from ..services.records import InstanceRecord, InstanceStatus, ServiceKind, unchanged_since
from ..services.tags import ResourceGUIDs, TagAction, TagManager, merge_tags
from .adapters import AdapterFactory, AdapterResult, Operation, ProviderAdapter, provider_error_from_exception
from .options import RDSOptions, parse_options

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_LAST_OPERATION_STATES: Dict[InstanceStatus, LastOperationState] = {
    InstanceStatus.REQUESTED: LastOperationState.IN_PROGRESS,
    InstanceStatus.PROVISIONING: LastOperationState.IN_PROGRESS,
    InstanceStatus.MODIFYING: LastOperationState.IN_PROGRESS,
    InstanceStatus.BINDING: LastOperationState.IN_PROGRESS,
    InstanceStatus.DELETING: LastOperationState.IN_PROGRESS,
    InstanceStatus.READY: LastOperationState.SUCCEEDED,
    InstanceStatus.BOUND: LastOperationState.SUCCEEDED,
    InstanceStatus.DELETED: LastOperationState.SUCCEEDED,
    InstanceStatus.PROVISIONING_FAILED: LastOperationState.FAILED,
    InstanceStatus.MODIFY_FAILED: LastOperationState.FAILED,
    InstanceStatus.DELETION_FAILED: LastOperationState.FAILED,
}

# Statuses from which modify and bind cannot proceed at all.
_UNUSABLE_STATUSES = frozenset(
    {
        InstanceStatus.REQUESTED,
        InstanceStatus.PROVISIONING_FAILED,
        InstanceStatus.DELETION_FAILED,
        InstanceStatus.DELETED,
    }
)

_FAILURE_STATUSES: Dict[Operation, InstanceStatus] = {
    Operation.CREATE: InstanceStatus.PROVISIONING_FAILED,
    Operation.MODIFY: InstanceStatus.MODIFY_FAILED,
    Operation.DELETE: InstanceStatus.DELETION_FAILED,
}

# Status a record shows while a claimed operation waits on the provider.
_CLAIMED_STATUSES: Dict[Operation, InstanceStatus] = {
    Operation.MODIFY: InstanceStatus.MODIFYING,
    Operation.DELETE: InstanceStatus.DELETING,
}

AbandonedCallback = Callable[[Future, InstanceRecord], None]


def last_operation_state(status: InstanceStatus) -> LastOperationState:
    return _LAST_OPERATION_STATES[status]


class ProviderTimeout(ProviderError):
    """A provider call did not finish within the configured timeout."""

    def __init__(self, operation: Operation, timeout: float) -> None:
        super().__init__(
            ProviderErrorKind.PROVIDER_UNAVAILABLE,
            f"{operation.value} did not complete within {timeout:g}s; poll the instance status",
        )
        self.operation = operation


class LifecycleOrchestrator:
    """Primary entry point for create, modify, bind, status and delete requests.

    Every public method takes a :class:`BrokerRequest` and returns a
    :class:`BrokerResponse`; broker errors never escape to the caller.

    Create, modify and delete claim the record before the provider is called
    and release the claim with the provider's result. While a claim is held no
    other operation may start on the instance, in this process or any other
    sharing the record store.
    """

    def __init__(
        self,
        config: AppConfig,
        catalog: Catalog,
        record_store: RecordStore,
        codec: CredentialCodec,
        tag_manager: TagManager,
        adapter_factory: AdapterFactory,
        audit_publisher: AuditEventPublisher,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self._config = config
        self._catalog = catalog
        self._record_store = record_store
        self._codec = codec
        self._tag_manager = tag_manager
        self._adapter_factory = adapter_factory
        self._audit_publisher = audit_publisher
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=config.provider.max_workers, thread_name_prefix="provider"
        )

    @property
    def _claim_ttl(self) -> float:
        return self._config.provider.claim_ttl_seconds

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def async_operation_required(
        self, plan_id: str, operation: Operation, instance_id: Optional[str] = None
    ) -> bool:
        """Return True when ``operation`` completes asynchronously for ``plan_id``.

        Without a ``plan_id`` the plan of the stored record for ``instance_id``
        is used; an unknown instance raises ``NotFoundError``.
        """
        if not plan_id and instance_id:
            plan_id = self._record_store.get(instance_id).plan_id
        plan = self._fetch_plan(plan_id)
        return self._adapter_factory.for_plan(plan).is_async(operation)

    def create(self, request: BrokerRequest) -> BrokerResponse:
        return self._run(AuditAction.CREATE_INSTANCE, request, self._create)

    def modify(self, request: BrokerRequest) -> BrokerResponse:
        return self._run(AuditAction.MODIFY_INSTANCE, request, self._modify)

    def bind(self, request: BrokerRequest) -> BrokerResponse:
        return self._run(AuditAction.BIND_INSTANCE, request, self._bind)

    def last_operation(self, request: BrokerRequest) -> BrokerResponse:
        return self._run(AuditAction.LAST_OPERATION, request, self._last_operation)

    def delete(self, request: BrokerRequest) -> BrokerResponse:
        return self._run(AuditAction.DELETE_INSTANCE, request, self._delete)

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Request Handlers
    # ------------------------------------------------------------------
    def _create(self, request: BrokerRequest) -> BrokerResponse:
        plan = self._fetch_plan(request.plan_id)
        options = parse_options(request.raw_parameters, plan)
        if self._record_store.exists(request.instance_id):
            raise ConflictError(f"Instance {request.instance_id} already exists")
        adapter = self._adapter_factory.for_plan(plan)

        password = generate_password()
        secret = self._codec.encrypt(password)
        record = InstanceRecord(
            instance_id=request.instance_id,
            organization_id=request.organization_id,
            space_id=request.space_id,
            service_id=request.service_id or plan.service_id,
            plan_id=plan.id,
            service_kind=plan.service_kind,
            password_ciphertext=secret.ciphertext,
            password_salt=secret.salt,
            engine_version=options.engine_version or plan.default_version,
            tags=merge_tags(plan.tags, self._generate_tags(TagAction.CREATE, plan, request)),
        )
        if plan.service_kind is ServiceKind.REDIS:
            record.engine = "redis"
            record.instance_class = plan.node_type
        else:
            record.engine = plan.engine
            record.username = generate_username()
            record.database_name = generate_database_name()
            record.instance_class = plan.instance_class
            record.allocated_storage = plan.allocated_storage
            if isinstance(options, RDSOptions):
                if options.storage:
                    record.allocated_storage = options.storage
                record.enable_functions = bool(options.enable_functions)

        token = record.claim(Operation.CREATE.value)
        # Claims the identifier; a concurrent duplicate create fails here.
        self._record_store.create(record)
        LOGGER.info(
            "Creating instance",
            extra={"instance_id": record.instance_id, "plan_id": plan.id, "kind": plan.service_kind.value},
        )

        try:
            result, working = self._call_claimed(
                Operation.CREATE, adapter.create_instance, record, password
            )
        finally:
            del password
        self._settle(Operation.CREATE, working, result)
        self._commit(working, token, Operation.CREATE)
        if result.error is not None:
            raise _prefixed(result.error, "There was an error creating the instance")
        return self._accepted_or_success(adapter, Operation.CREATE, working)

    def _modify(self, request: BrokerRequest) -> BrokerResponse:
        record = self._record_store.get(request.instance_id)
        self._check_gate(record, Operation.MODIFY)
        current_plan = self._fetch_plan(record.plan_id)
        new_plan = self._fetch_plan(request.plan_id) if request.plan_id else current_plan
        if new_plan.family != current_plan.family:
            raise ValidationError(
                f"Switching from plan {current_plan.name} to {new_plan.name} is not supported"
            )
        options = parse_options(request.raw_parameters, new_plan)
        changes = self._pending_changes(record, new_plan, options)
        if not changes and new_plan.id == record.plan_id:
            LOGGER.info("Modify requested with no changes", extra={"instance_id": record.instance_id})
            return BrokerResponse(ResponseStatus.SUCCESS, "No changes requested")

        adapter = self._adapter_factory.for_plan(new_plan)
        claimed = self._claim(record, Operation.MODIFY, pending_changes=changes)
        LOGGER.info(
            "Modifying instance",
            extra={"instance_id": record.instance_id, "plan_id": new_plan.id, "changes": sorted(changes)},
        )
        result, working = self._call_claimed(
            Operation.MODIFY, adapter.modify_instance, claimed, plan_id=new_plan.id
        )
        self._settle(Operation.MODIFY, working, result, plan_id=new_plan.id)
        self._commit(working, claimed.claim_token, Operation.MODIFY)
        if result.error is not None:
            raise _prefixed(result.error, "There was an error modifying the instance")
        return self._accepted_or_success(adapter, Operation.MODIFY, working)

    def _bind(self, request: BrokerRequest) -> BrokerResponse:
        record = self._record_store.get(request.instance_id)
        self._check_gate(record, Operation.BIND)
        plan = self._fetch_plan(record.plan_id)
        adapter = self._adapter_factory.for_plan(plan)
        try:
            password = self._codec.decrypt(
                secret_from_record(record.password_ciphertext, record.password_salt)
            )
        except DecryptionFailed as exc:
            LOGGER.error(
                "Unable to decrypt instance password", extra={"instance_id": record.instance_id}
            )
            raise InternalError("Unable to get instance password.") from exc

        result, working = self._call_provider(
            Operation.BIND, adapter.bind_to_consumer, record, password
        )
        del password
        if result.error is not None:
            raise _prefixed(
                result.error,
                "There was an error binding the database instance to the application",
            )
        if (working.status, working.host, working.port) != (record.status, record.host, record.port):
            if not self._write_if_unchanged(working, record, Operation.BIND):
                raise ConflictError(
                    f"Instance {record.instance_id} changed while binding; retry the request"
                )
        LOGGER.info(
            "Bound instance",
            extra={"instance_id": record.instance_id, "binding_id": request.binding_id},
        )
        return BrokerResponse(ResponseStatus.SUCCESS, payload={"credentials": result.credentials})

    def _last_operation(self, request: BrokerRequest) -> BrokerResponse:
        record = self._record_store.get(request.instance_id)
        if record.claim_active(self._claim_ttl):
            # the claiming operation records the provider's answer itself
            return self._state_response(
                last_operation_state(record.status),
                f"{record.claim_operation} in progress; instance is {record.status.value}",
            )
        plan = self._fetch_plan(record.plan_id)
        adapter = self._adapter_factory.for_plan(plan)
        try:
            result, working = self._call_provider(Operation.CHECK_STATUS, adapter.check_status, record)
        except ProviderTimeout:
            state = last_operation_state(record.status)
            return self._state_response(state, f"Status check timed out; instance is {record.status.value}")

        if result.error is not None and result.error.kind is not ProviderErrorKind.NOT_FOUND:
            LOGGER.warning(
                "Status check failed; reporting last known status",
                extra={"instance_id": record.instance_id, "error": str(result.error)},
            )
            return self._state_response(last_operation_state(record.status), str(result.error))

        if result.status is InstanceStatus.DELETED:
            if not self._remove_if_unchanged(record, Operation.CHECK_STATUS):
                return self._current_state(record.instance_id)
            LOGGER.info("Instance deleted", extra={"instance_id": record.instance_id})
            return self._state_response(LastOperationState.SUCCEEDED, "The service instance has been deleted")

        # an expired claim is cleared by the next status write
        working.release_claim()
        working.status = result.status
        if result.status is InstanceStatus.READY:
            working.pending_changes = {}
            working.last_error = result.notice
        elif result.error is not None:
            working.last_error = str(result.error)
        if _observed(working) != _observed(record):
            LOGGER.info(
                "Instance status changed",
                extra={
                    "instance_id": record.instance_id,
                    "from_status": record.status.value,
                    "to_status": result.status.value,
                },
            )
            if not self._write_if_unchanged(working, record, Operation.CHECK_STATUS):
                return self._current_state(record.instance_id)

        state = last_operation_state(result.status)
        description = f"The service instance status is {result.status.value}"
        if working.last_error and (state is LastOperationState.FAILED or result.notice):
            description = f"{description}: {working.last_error}"
        return self._state_response(state, description)

    def _delete(self, request: BrokerRequest) -> BrokerResponse:
        record = self._record_store.get(request.instance_id)
        self._check_gate(record, Operation.DELETE)
        plan = self._fetch_plan(record.plan_id)
        adapter = self._adapter_factory.for_plan(plan)
        claimed = self._claim(record, Operation.DELETE)
        LOGGER.info("Deleting instance", extra={"instance_id": record.instance_id})
        result, working = self._call_claimed(Operation.DELETE, adapter.delete_instance, claimed)
        self._settle(Operation.DELETE, working, result)
        self._commit(working, claimed.claim_token, Operation.DELETE)
        if result.error is not None:
            raise _prefixed(result.error, "There was an error deleting the instance")
        if working.status is InstanceStatus.DELETED:
            return BrokerResponse(ResponseStatus.SUCCESS, "The service instance has been deleted")
        return self._accepted_or_success(adapter, Operation.DELETE, working)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def _fetch_plan(self, plan_id: str) -> Plan:
        try:
            return self._catalog.fetch_plan(plan_id)
        except NotFoundError as exc:
            raise ValidationError(str(exc)) from exc

    def _check_gate(self, record: InstanceRecord, operation: Operation) -> None:
        if record.claim_active(self._claim_ttl):
            raise ConflictError(
                f"Instance {record.instance_id} has an operation in progress: {record.claim_operation}"
            )
        if record.in_progress:
            raise ConflictError(
                f"Instance {record.instance_id} has an operation in progress: {record.status.value}"
            )
        if record.claim_token:
            LOGGER.warning(
                "Ignoring expired operation claim",
                extra={
                    "instance_id": record.instance_id,
                    "claim_operation": record.claim_operation,
                    "claimed_at": record.claimed_at,
                },
            )
        if record.status in _UNUSABLE_STATUSES and operation is not Operation.DELETE:
            raise ValidationError(
                f"Instance {record.instance_id} cannot {operation.value} while {record.status.value}"
            )

    def _pending_changes(
        self, record: InstanceRecord, plan: Plan, options: Any
    ) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        if options.engine_version and options.engine_version != record.engine_version:
            changes["engine_version"] = options.engine_version
        if isinstance(options, RDSOptions) and options.storage is not None:
            current = record.allocated_storage or 0
            if options.storage < current:
                raise ValidationError(
                    f"Invalid storage {options.storage}; cannot be lower than the current {current}"
                )
            if options.storage > current:
                changes["allocated_storage"] = options.storage
        target_class = plan.node_type if plan.service_kind is ServiceKind.REDIS else plan.instance_class
        if not plan.shared and target_class and target_class != record.instance_class:
            changes["instance_class"] = target_class
        return changes

    def _generate_tags(self, action: TagAction, plan: Plan, request: BrokerRequest) -> Dict[str, str]:
        try:
            service_name = self._catalog.service_for_plan(plan).name
        except NotFoundError:
            service_name = plan.service_id
        try:
            return self._tag_manager.generate_tags(
                action,
                service_name,
                plan.name,
                ResourceGUIDs(
                    instance_guid=request.instance_id,
                    space_guid=request.space_id,
                    organization_guid=request.organization_id,
                ),
                action is TagAction.UPDATE,
            )
        except Exception as exc:
            LOGGER.exception("Tag generation failed", extra={"instance_id": request.instance_id})
            raise InternalError("There was an error generating the tags") from exc

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------
    def _claim(
        self,
        record: InstanceRecord,
        operation: Operation,
        pending_changes: Optional[Dict[str, Any]] = None,
    ) -> InstanceRecord:
        """Take the single-writer gate of ``record`` for ``operation``.

        The write only applies if the stored record is still the one the gate
        was checked against, so two requests racing for the same instance
        cannot both win.
        """
        claimed = copy.deepcopy(record)
        claimed.claim(operation.value)
        claimed.status = _CLAIMED_STATUSES[operation]
        if pending_changes is not None:
            claimed.pending_changes = pending_changes
        if not self._record_store.update_if(claimed, unchanged_since(record)):
            raise ConflictError(
                f"Instance {record.instance_id} changed while starting {operation.value}; retry the request"
            )
        return claimed

    def _settle(
        self,
        operation: Operation,
        working: InstanceRecord,
        result: AdapterResult,
        plan_id: Optional[str] = None,
    ) -> None:
        """Apply a provider result to ``working`` and release its claim."""

        working.release_claim()
        if result.error is not None:
            working.status = _FAILURE_STATUSES[operation]
            working.last_error = str(result.error)
            working.pending_changes = {}
            return
        if operation is Operation.MODIFY:
            changes = working.pending_changes
            if "engine_version" in changes:
                working.engine_version = changes["engine_version"]
            if "allocated_storage" in changes:
                working.allocated_storage = changes["allocated_storage"]
            if "instance_class" in changes:
                working.instance_class = changes["instance_class"]
            if plan_id:
                working.plan_id = plan_id
        working.status = result.status
        working.last_error = result.notice
        if result.status is InstanceStatus.READY:
            working.pending_changes = {}

    def _commit(self, working: InstanceRecord, token: Optional[str], operation: Operation) -> None:
        """Persist a settled record, provided the claim ``token`` still holds the gate."""

        def holds_claim(current: InstanceRecord) -> bool:
            return current.claim_token == token

        try:
            if working.status is InstanceStatus.DELETED:
                saved = self._record_store.delete_if(working.instance_id, holds_claim)
            else:
                saved = self._record_store.update_if(working, holds_claim)
        except BrokerError as exc:
            self._log_needs_reconciliation(working, operation, exc)
            raise InternalError(
                f"Provider {operation.value} finished but the instance record could not be saved"
            ) from exc
        if not saved:
            error = ConflictError("operation claim was taken over")
            self._log_needs_reconciliation(working, operation, error)
            raise InternalError(
                f"Provider {operation.value} finished but the instance record could not be saved"
            )

    def _settle_abandoned(
        self,
        operation: Operation,
        token: Optional[str],
        future: Future,
        working: InstanceRecord,
        plan_id: Optional[str],
    ) -> None:
        """Record the outcome of a call that outlived its timeout, then release the claim."""

        if future.cancelled():
            result = AdapterResult(
                _FAILURE_STATUSES[operation],
                ProviderError(
                    ProviderErrorKind.PROVIDER_UNAVAILABLE,
                    f"{operation.value} was cancelled before it reached the provider",
                ),
            )
        else:
            try:
                result = future.result()
            except Exception as exc:
                result = AdapterResult(_FAILURE_STATUSES[operation], provider_error_from_exception(exc))
        self._settle(operation, working, result, plan_id=plan_id)
        try:
            self._commit(working, token, operation)
        except InternalError:
            # already logged with needs_reconciliation
            return
        LOGGER.info(
            "Recorded late provider result",
            extra={
                "instance_id": working.instance_id,
                "operation": operation.value,
                "status": working.status.value,
            },
        )

    # ------------------------------------------------------------------
    # Provider Calls
    # ------------------------------------------------------------------
    def _call_provider(
        self,
        operation: Operation,
        func: Callable[..., T],
        record: InstanceRecord,
        *args: Any,
        on_abandoned: Optional[AbandonedCallback] = None,
    ) -> Tuple[T, InstanceRecord]:
        """Run ``func`` on a copy of ``record`` under the provider timeout.

        The adapter mutates the copy; on timeout the copy is handed to
        ``on_abandoned`` once the call eventually finishes, and the caller's
        record stays unchanged.
        """
        working = copy.deepcopy(record)
        timeout = self._config.provider.timeout_seconds
        future: Future = self._executor.submit(func, working, *args)
        try:
            return future.result(timeout=timeout), working
        except FutureTimeoutError as exc:
            if on_abandoned is not None:
                future.add_done_callback(lambda done: on_abandoned(done, working))
            future.cancel()
            LOGGER.error(
                "Provider call timed out",
                extra={"instance_id": record.instance_id, "operation": operation.value, "timeout": timeout},
            )
            raise ProviderTimeout(operation, timeout) from exc
        except BrokerError:
            raise
        except Exception as exc:
            LOGGER.exception(
                "Provider call raised",
                extra={"instance_id": record.instance_id, "operation": operation.value},
            )
            raise provider_error_from_exception(exc) from exc

    def _call_claimed(
        self,
        operation: Operation,
        func: Callable[..., AdapterResult],
        claimed: InstanceRecord,
        *args: Any,
        plan_id: Optional[str] = None,
    ) -> Tuple[AdapterResult, InstanceRecord]:
        """Call the provider for a claimed record.

        A raising adapter becomes a failed result so the claim is released
        with it. A timeout keeps the claim until the abandoned call finishes.
        """
        token = claimed.claim_token

        def on_abandoned(future: Future, working: InstanceRecord) -> None:
            self._settle_abandoned(operation, token, future, working, plan_id)

        try:
            return self._call_provider(operation, func, claimed, *args, on_abandoned=on_abandoned)
        except ProviderTimeout:
            raise
        except ProviderError as exc:
            return AdapterResult(_FAILURE_STATUSES[operation], exc), copy.deepcopy(claimed)

    def _accepted_or_success(
        self, adapter: ProviderAdapter, operation: Operation, record: InstanceRecord
    ) -> BrokerResponse:
        if adapter.is_async(operation):
            return BrokerResponse(
                ResponseStatus.ACCEPTED,
                f"{operation.value} in progress",
                payload={"operation": operation.value, "status": record.status.value},
            )
        return BrokerResponse(
            ResponseStatus.SUCCESS,
            f"{operation.value} complete",
            payload={"status": record.status.value},
        )

    @staticmethod
    def _state_response(state: LastOperationState, description: str) -> BrokerResponse:
        return BrokerResponse(
            ResponseStatus.SUCCESS,
            description,
            payload={"state": state.value, "description": description},
        )

    def _current_state(self, instance_id: str) -> BrokerResponse:
        """Report the stored status after another writer changed the record first."""

        try:
            current = self._record_store.get(instance_id)
        except NotFoundError:
            return self._state_response(LastOperationState.SUCCEEDED, "The service instance has been deleted")
        return self._state_response(
            last_operation_state(current.status),
            f"The service instance status is {current.status.value}",
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _write_if_unchanged(
        self, working: InstanceRecord, snapshot: InstanceRecord, operation: Operation
    ) -> bool:
        try:
            return self._record_store.update_if(working, unchanged_since(snapshot))
        except BrokerError as exc:
            self._log_needs_reconciliation(working, operation, exc)
            raise InternalError(
                f"Provider {operation.value} finished but the instance record could not be saved"
            ) from exc

    def _remove_if_unchanged(self, snapshot: InstanceRecord, operation: Operation) -> bool:
        try:
            return self._record_store.delete_if(snapshot.instance_id, unchanged_since(snapshot))
        except BrokerError as exc:
            self._log_needs_reconciliation(snapshot, operation, exc)
            raise InternalError("Instance deleted but its record could not be removed") from exc

    @staticmethod
    def _log_needs_reconciliation(
        record: InstanceRecord, operation: Operation, error: Exception
    ) -> None:
        LOGGER.error(
            "Failed to persist instance record after provider call",
            extra={
                "instance_id": record.instance_id,
                "operation": operation.value,
                "status": record.status.value,
                "needs_reconciliation": True,
                "error": str(error),
            },
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------
    def _run(
        self,
        action: AuditAction,
        request: BrokerRequest,
        handler: Callable[[BrokerRequest], BrokerResponse],
    ) -> BrokerResponse:
        try:
            response = handler(request)
        except BrokerError as exc:
            return self._handle_operation_failure(action, request, exc)
        except Exception as exc:
            LOGGER.exception(
                "Unexpected failure handling request",
                extra={"instance_id": request.instance_id, "action": action.value},
            )
            return self._handle_operation_failure(action, request, InternalError(str(exc)))
        outcome = AuditOutcome.ACCEPTED if response.status is ResponseStatus.ACCEPTED else AuditOutcome.SUCCESS
        details: Dict[str, Any] = {
            "planId": request.plan_id or None,
            "bindingId": request.binding_id,
            "status": response.payload.get("status"),
            "state": response.payload.get("state"),
        }
        self._publish_audit_event(request.instance_id, action, outcome, details)
        return response

    def _handle_operation_failure(
        self, action: AuditAction, request: BrokerRequest, error: BrokerError
    ) -> BrokerResponse:
        status = error.response_status
        log = LOGGER.error if status is ResponseStatus.SERVER_ERROR else LOGGER.warning
        log(
            "Broker operation failed",
            extra={
                "instance_id": request.instance_id,
                "action": action.value,
                "status": status.value,
                "error": str(error),
            },
        )
        details = {
            "planId": request.plan_id or None,
            "status": status.value,
            "error": str(error),
            "errorType": error.__class__.__name__,
        }
        self._publish_audit_event(request.instance_id, action, AuditOutcome.FAILURE, details)
        return BrokerResponse(status, str(error))

    def _publish_audit_event(
        self,
        instance_id: str,
        action: AuditAction,
        outcome: AuditOutcome,
        details: Dict[str, Any],
    ) -> None:
        filtered_details = {key: value for key, value in details.items() if value is not None}
        self._audit_publisher.publish(instance_id, action, outcome, filtered_details)


def _prefixed(error: ProviderError, prefix: str) -> ProviderError:
    return ProviderError(error.kind, f"{prefix}. Error: {error.message}", code=error.code)


def _observed(record: InstanceRecord) -> Tuple[Any, ...]:
    return (record.status, record.host, record.port, record.last_error, record.claim_token)


__all__ = ["LifecycleOrchestrator", "ProviderTimeout", "last_operation_state"]
