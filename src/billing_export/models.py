"""Typed data model for targets, reconciliation outcomes and operations.

Persisted and user-supplied shapes (ReconciliationRecord, PlanSpec) are
pydantic models so they are validated at the boundary; transient in-run
values are plain dataclasses.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Enumerations
# =============================================================================


class TargetClassification(str, Enum):
    """Target variant class; selects the configuration fallback order."""

    STANDARD = "standard"  # EA / MCA / pay-as-you-go
    CSP = "csp"  # Cloud Solution Provider / Azure plan
    BILLING = "billing"  # billing profile covering every non-CSP subscription


class ExportVariant(str, Enum):
    """Cost export dataset types, tried in priority order."""

    ACTUAL_COST = "ActualCost"
    USAGE = "Usage"


class ReconciliationStatus(str, Enum):
    PENDING = "Pending"
    CONVERGED = "Converged"
    SKIPPED = "Skipped"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ReconciliationStatus.PENDING


class OperationStatus(str, Enum):
    """Lifecycle of an asynchronous provider-side operation.

    TIMED_OUT is set locally by the poller and says nothing about the
    remote outcome.
    """

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    STOPPED = "Stopped"
    TIMED_OUT = "TimedOut"

    @property
    def is_terminal(self) -> bool:
        return self in (
            OperationStatus.SUCCEEDED,
            OperationStatus.FAILED,
            OperationStatus.STOPPED,
            OperationStatus.TIMED_OUT,
        )


# ARM provisioningState values mapped onto the operation lifecycle
PROVISIONING_STATE_MAP: dict[str, OperationStatus] = {
    "accepted": OperationStatus.PENDING,
    "created": OperationStatus.PENDING,
    "ready": OperationStatus.PENDING,
    "running": OperationStatus.RUNNING,
    "updating": OperationStatus.RUNNING,
    "deploying": OperationStatus.RUNNING,
    "validating": OperationStatus.RUNNING,
    "succeeded": OperationStatus.SUCCEEDED,
    "failed": OperationStatus.FAILED,
    "canceled": OperationStatus.STOPPED,
    "cancelled": OperationStatus.STOPPED,
}


def operation_status_from_provisioning_state(state: str | None) -> OperationStatus:
    """Map an ARM provisioning state onto OperationStatus.

    Unknown states count as running so the poller keeps waiting until its
    own deadline.
    """
    if not state:
        return OperationStatus.PENDING
    return PROVISIONING_STATE_MAP.get(state.lower(), OperationStatus.RUNNING)


def utc_now() -> datetime:
    return datetime.now(UTC)


def resource_name_for(target_id: str, prefix: str) -> str:
    """Deterministic per-target resource name: prefix plus the id's last six chars."""
    return f"{prefix}-{target_id[-6:]}"


BILLING_SCOPE_PREFIX = "/providers/microsoft.billing/billingaccounts/"


def is_billing_scope(target_id: str) -> bool:
    """Billing targets are identified by their ARM scope rather than a GUID."""
    return target_id.lower().startswith(BILLING_SCOPE_PREFIX)


# =============================================================================
# Transient run values
# =============================================================================


@dataclass(frozen=True)
class Target:
    """One provisioning unit, discovered fresh on every run."""

    id: str
    classification: TargetClassification = TargetClassification.STANDARD
    display_name: str = ""
    quota_id: str = ""
    skip_reason: str | None = None
    # Billing scope whose export also covers this subscription
    covered_by: str | None = None

    @classmethod
    def for_billing_scope(cls, scope: str) -> Target:
        return cls(
            id=scope.rstrip("/"),
            classification=TargetClassification.BILLING,
            display_name=scope.rstrip("/").rsplit("/", 1)[-1],
        )

    @property
    def is_billing_scope(self) -> bool:
        return is_billing_scope(self.id)

    @property
    def scope(self) -> str:
        if self.is_billing_scope:
            return self.id
        return f"/subscriptions/{self.id}"


@dataclass
class OperationHandle:
    """Reference to an asynchronous provider operation."""

    id: str
    target_id: str
    variant: ExportVariant | None = None
    status: OperationStatus = OperationStatus.PENDING
    started_at: datetime = field(default_factory=utc_now)
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(frozen=True)
class CreateOutcome:
    """Result of a create call.

    ``handle`` is None when the provider completed the create synchronously.
    """

    handle: OperationHandle | None = None

    @property
    def is_async(self) -> bool:
        return self.handle is not None


@dataclass(frozen=True)
class ResourceState:
    """Observed state of a target's resource, parsed from a describe call."""

    exists: bool
    variant: ExportVariant | None = None
    destination_id: str | None = None
    schedule_active: bool = False
    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def absent(cls) -> ResourceState:
        return cls(exists=False)

    def matches(self, destination_id: str, allowed_variants: list[ExportVariant]) -> bool:
        """Check the resource has the desired configuration."""
        if not self.exists or not self.schedule_active:
            return False
        if self.variant not in allowed_variants:
            return False
        return (self.destination_id or "").lower() == destination_id.lower()


@dataclass(frozen=True)
class CapabilityCheckResult:
    granted: bool
    capability: str
    checked_at: datetime = field(default_factory=utc_now)
    detail: str | None = None


# =============================================================================
# Persisted record
# =============================================================================


class ReconciliationRecord(BaseModel):
    """Durable outcome for one target.

    Serialized with camelCase keys, one JSON object per line in the state
    file.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    target_id: str = Field(alias="targetId", min_length=1)
    resource_name: str = Field(alias="resourceName")
    status: ReconciliationStatus = ReconciliationStatus.PENDING
    variant_used: ExportVariant | None = Field(None, alias="variantUsed")
    last_attempt_at: datetime = Field(default_factory=utc_now, alias="lastAttemptAt")
    reason: str | None = None
    credential_strategy: str | None = Field(None, alias="credentialStrategy")

    def to_json_line(self) -> str:
        return self.model_dump_json(by_alias=True)

    def same_outcome(self, other: ReconciliationRecord) -> bool:
        """True when both records describe the same result, ignoring timestamps."""
        return (
            self.target_id == other.target_id
            and self.resource_name == other.resource_name
            and self.status == other.status
            and self.variant_used == other.variant_used
            and self.reason == other.reason
        )


# =============================================================================
# Plan file
# =============================================================================

DEFAULT_VARIANT_ORDER: dict[TargetClassification, list[ExportVariant]] = {
    TargetClassification.STANDARD: [ExportVariant.ACTUAL_COST, ExportVariant.USAGE],
    TargetClassification.CSP: [ExportVariant.USAGE],
    TargetClassification.BILLING: [ExportVariant.ACTUAL_COST, ExportVariant.USAGE],
}

DEFAULT_CSP_QUOTA_PATTERNS = ["CSP", "AZURE_PLAN", "MICROSOFT_AZURE_PLAN"]

DEFAULT_SKIP_QUOTA_PATTERNS: dict[str, str] = {
    "MSDN|VisualStudio|MSDNDevTest|PAYG_2014-09-01": "Visual Studio subscription (unsupported)",
    "FreeTrial": "Free trial subscription (limited features)",
}

DEFAULT_CAPABILITY = "Microsoft.CostManagement/exports/write"

# Registered on each target subscription before its export is created
DEFAULT_TARGET_PROVIDERS = ["Microsoft.CostManagement", "Microsoft.CostManagementExports"]


class PlanSpec(BaseModel):
    """Run plan: variant order, classification and skip rules, naming."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    variants: dict[TargetClassification, list[ExportVariant]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_VARIANT_ORDER.items()}
    )
    csp_quota_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CSP_QUOTA_PATTERNS), alias="cspQuotaPatterns"
    )
    skip_quota_patterns: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_SKIP_QUOTA_PATTERNS), alias="skipQuotaPatterns"
    )
    capability: str = DEFAULT_CAPABILITY
    export_name_prefix: str = Field("CostExport", alias="exportNamePrefix", min_length=1)
    export_folder_prefix: str = Field("billing-export", alias="exportFolderPrefix", min_length=1)
    storage_container: str = Field("dataexport", alias="storageContainer", min_length=3)
    billing_export_name: str = Field("CostExportAllSubs", alias="billingExportName", min_length=1)
    target_providers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TARGET_PROVIDERS), alias="targetProviders"
    )

    @field_validator("variants")
    @classmethod
    def validate_variants(
        cls, v: dict[TargetClassification, list[ExportVariant]]
    ) -> dict[TargetClassification, list[ExportVariant]]:
        merged = {k: list(order) for k, order in DEFAULT_VARIANT_ORDER.items()}
        for classification, order in v.items():
            if not order:
                raise ValueError(f"variant list for '{classification.value}' must not be empty")
            if len(set(order)) != len(order):
                raise ValueError(f"variant list for '{classification.value}' has duplicates")
            merged[classification] = list(order)
        return merged

    @field_validator("csp_quota_patterns")
    @classmethod
    def validate_csp_patterns(cls, v: list[str]) -> list[str]:
        for pattern in v:
            _compile(pattern)
        return v

    @field_validator("skip_quota_patterns")
    @classmethod
    def validate_skip_patterns(cls, v: dict[str, str]) -> dict[str, str]:
        for pattern in v:
            _compile(pattern)
        return v

    def variants_for(self, classification: TargetClassification) -> list[ExportVariant]:
        return list(self.variants[classification])

    def classify(self, quota_id: str) -> TargetClassification:
        for pattern in self.csp_quota_patterns:
            if re.search(pattern, quota_id, re.IGNORECASE):
                return TargetClassification.CSP
        return TargetClassification.STANDARD

    def skip_reason_for(self, quota_id: str) -> str | None:
        for pattern, reason in self.skip_quota_patterns.items():
            if re.search(pattern, quota_id, re.IGNORECASE):
                return reason
        return None

    def resource_name(self, target_id: str) -> str:
        if is_billing_scope(target_id):
            return self.billing_export_name
        return resource_name_for(target_id, self.export_name_prefix)

    def folder_for(self, target_id: str) -> str:
        if is_billing_scope(target_id):
            profile = target_id.rstrip("/").rsplit("/", 1)[-1]
            return f"{self.export_folder_prefix}/billing/{profile}"
        return f"{self.export_folder_prefix}/subscriptions/{target_id}"


def _compile(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise ValueError(f"invalid pattern '{pattern}': {e}") from e
