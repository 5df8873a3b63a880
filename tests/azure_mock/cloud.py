"""Scripted in-memory Cloud Resource API.

Implements the CloudResourceApi protocol without Azure connectivity:
- exports are held in memory per target id
- create behavior is scripted per (target, variant) and consumed in order,
  the last scripted behavior repeating
- asynchronous creates return a handle that reaches its terminal status
  after a configurable number of polls
- capability checks can be granted after N checks or never
- every call is recorded for assertions
- provider registration completes on the next state read
- unexpected exceptions can be injected per target

Thread-safe: the engine calls into the API from executor threads.
"""

from __future__ import annotations

import dataclasses
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from billing_export.errors import (
    PermanentAuthorizationDenied,
    ProviderError,
    TransientAuthorizationError,
    VariantUnsupported,
)
from billing_export.models import (
    CreateOutcome,
    ExportVariant,
    OperationHandle,
    OperationStatus,
    ResourceState,
    Target,
)


class CreateBehavior(str, Enum):
    SUCCEED = "succeed"
    UNSUPPORTED = "unsupported"
    TRANSIENT_AUTH = "transient_auth"
    CAPABILITY_AUTH = "capability_auth"
    PERMANENT_DENIED = "permanent_denied"
    PROVIDER_ERROR = "provider_error"
    ASYNC_SUCCEED = "async_succeed"
    ASYNC_FAIL_UNSUPPORTED = "async_fail_unsupported"
    ASYNC_FAIL = "async_fail"
    ASYNC_HANG = "async_hang"


@dataclass
class MockExport:
    variant: ExportVariant
    destination_id: str
    schedule_active: bool = True


@dataclass
class MockOperation:
    behavior: CreateBehavior
    target_id: str
    variant: ExportVariant
    polls_remaining: int


@dataclass
class MockCall:
    method: str
    target_id: str
    variant: ExportVariant | None = None
    credential: str | None = None


@dataclass
class MockCloudApi:
    """In-memory CloudResourceApi with scripted failures."""

    destination_id: str
    async_polls: int = 1
    exports: dict[str, MockExport] = field(default_factory=dict)
    calls: list[MockCall] = field(default_factory=list)
    denied: dict[str, set[str]] = field(default_factory=dict)
    capability_after: dict[str, int] = field(default_factory=dict)
    never_granted: set[str] = field(default_factory=set)
    invisible_after_create: set[str] = field(default_factory=set)
    # Provider states keyed by (target id, namespace); unlisted providers are Registered
    providers: dict[tuple[str, str], str] = field(default_factory=dict)
    billing_scope: str | None = None
    # Unexpected errors raised from a method, keyed by target id
    describe_errors: dict[str, Exception] = field(default_factory=dict)
    capability_errors: dict[str, Exception] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._scripts: dict[tuple[str, ExportVariant], list[CreateBehavior]] = {}
        self._operations: dict[str, MockOperation] = {}
        self._capability_checks: dict[str, int] = {}
        self._operation_counter = 0

    # -------------------------------------------------------------------------
    # Test setup helpers
    # -------------------------------------------------------------------------

    def script(self, target_id: str, variant: ExportVariant, *behaviors: CreateBehavior) -> None:
        """Script create outcomes for one target and variant."""
        self._scripts[(target_id, variant)] = list(behaviors)

    def seed_export(self, target_id: str, variant: ExportVariant, destination_id: str | None = None) -> None:
        self.exports[target_id] = MockExport(variant, destination_id or self.destination_id)

    def deny(self, target_id: str, credential_name: str) -> None:
        self.denied.setdefault(target_id, set()).add(credential_name)

    # -------------------------------------------------------------------------
    # Assertions
    # -------------------------------------------------------------------------

    def count(self, method: str, target_id: str | None = None) -> int:
        return sum(
            1
            for c in self.calls
            if c.method == method and (target_id is None or c.target_id == target_id)
        )

    def variants_tried(self, target_id: str) -> list[ExportVariant]:
        return [c.variant for c in self.calls if c.method == "create" and c.target_id == target_id and c.variant]

    # -------------------------------------------------------------------------
    # CloudResourceApi
    # -------------------------------------------------------------------------

    def _record(self, method: str, credential: Any, target_id: str, variant: ExportVariant | None = None) -> None:
        self.calls.append(MockCall(method, target_id, variant, getattr(credential, "name", None)))

    def authorize(self, credential: Any, target: Target) -> None:
        with self._lock:
            self._record("authorize", credential, target.id)
            if getattr(credential, "name", None) in self.denied.get(target.id, set()):
                raise PermanentAuthorizationDenied(f"AuthorizationFailed for {target.id}")

    def describe(self, credential: Any, target: Target) -> ResourceState:
        with self._lock:
            self._record("describe", credential, target.id)
            if target.id in self.describe_errors:
                raise self.describe_errors[target.id]
            export = self.exports.get(target.id)
            if export is None or target.id in self.invisible_after_create:
                return ResourceState.absent()
            return ResourceState(
                exists=True,
                variant=export.variant,
                destination_id=export.destination_id,
                schedule_active=export.schedule_active,
            )

    def create(self, credential: Any, target: Target, variant: ExportVariant) -> CreateOutcome:
        with self._lock:
            self._record("create", credential, target.id, variant)
            script = self._scripts.get((target.id, variant), [])
            behavior = script.pop(0) if len(script) > 1 else (script[0] if script else CreateBehavior.SUCCEED)

            if behavior == CreateBehavior.SUCCEED:
                self.exports[target.id] = MockExport(variant, self.destination_id)
                return CreateOutcome()
            if behavior == CreateBehavior.UNSUPPORTED:
                raise VariantUnsupported(f"Dataset type {variant.value} is not supported for this offer")
            if behavior == CreateBehavior.TRANSIENT_AUTH:
                raise TransientAuthorizationError("AuthorizationFailed: caller cannot write exports")
            if behavior == CreateBehavior.CAPABILITY_AUTH:
                raise TransientAuthorizationError("RBACAccessDenied: dataset not readable", capability=True)
            if behavior == CreateBehavior.PERMANENT_DENIED:
                raise PermanentAuthorizationDenied("RequestDisallowedByPolicy: exports are blocked")
            if behavior == CreateBehavior.PROVIDER_ERROR:
                raise ProviderError("InternalServerError", status_code=500)

            self._operation_counter += 1
            operation_id = f"op-{self._operation_counter}"
            self._operations[operation_id] = MockOperation(behavior, target.id, variant, self.async_polls)
            return CreateOutcome(handle=OperationHandle(id=operation_id, target_id=target.id, variant=variant))

    def poll_operation(self, credential: Any, handle: OperationHandle) -> OperationHandle:
        with self._lock:
            self._record("poll_operation", credential, handle.target_id, handle.variant)
            operation = self._operations[handle.id]
            operation.polls_remaining -= 1
            if operation.behavior == CreateBehavior.ASYNC_HANG or operation.polls_remaining > 0:
                return dataclasses.replace(handle, status=OperationStatus.RUNNING)

            if operation.behavior == CreateBehavior.ASYNC_SUCCEED:
                self.exports[operation.target_id] = MockExport(operation.variant, self.destination_id)
                return dataclasses.replace(handle, status=OperationStatus.SUCCEEDED)
            if operation.behavior == CreateBehavior.ASYNC_FAIL_UNSUPPORTED:
                return dataclasses.replace(
                    handle,
                    status=OperationStatus.FAILED,
                    error=f"BadRequest: Dataset type {operation.variant.value} is not supported",
                )
            return dataclasses.replace(
                handle, status=OperationStatus.FAILED, error="InternalError: export provisioning failed"
            )

    def check_capability(self, credential: Any, target: Target, capability: str) -> bool:
        with self._lock:
            self._record("check_capability", credential, target.id)
            if target.id in self.capability_errors:
                raise self.capability_errors[target.id]
            if target.id in self.never_granted:
                return False
            checks = self._capability_checks.get(target.id, 0) + 1
            self._capability_checks[target.id] = checks
            return checks > self.capability_after.get(target.id, 0)

    def provider_state(self, credential: Any, target: Target, namespace: str) -> str:
        with self._lock:
            self._record("provider_state", credential, target.id)
            state = self.providers.get((target.id, namespace), "Registered")
            if state == "Registering":
                self.providers[(target.id, namespace)] = "Registered"
            return state

    def register_provider(self, credential: Any, target: Target, namespace: str) -> None:
        with self._lock:
            self._record("register_provider", credential, target.id)
            self.providers[(target.id, namespace)] = "Registering"

    def delete(self, credential: Any, target: Target) -> bool:
        with self._lock:
            self._record("delete", credential, target.id)
            return self.exports.pop(target.id, None) is not None

    def discover_billing_scope(self, credential: Any) -> str | None:
        with self._lock:
            self._record("discover_billing_scope", credential, "")
            return self.billing_scope
