"""Configuration management with validation.

All settings are validated at construction time so a misconfigured run
fails before any cloud call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class AuthStrategyName(str, Enum):
    """Supported credential strategies, in the order they may be configured."""

    AMBIENT = "ambient"
    AZURE_CLI = "cli"
    SERVICE_PRINCIPAL = "service_principal"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_LOCATION = "uksouth"
DEFAULT_RESOURCE_GROUP = "billing-dataexport"
DEFAULT_STORAGE_ACCOUNT_PREFIX = "billingexport"
DEFAULT_STATE_FILE = "known_subscriptions.jsonl"

DEFAULT_MAX_WORKERS = 4
MIN_MAX_WORKERS = 1
MAX_MAX_WORKERS = 32

DEFAULT_PROPAGATION_MAX_WAIT_SECONDS = 120.0
DEFAULT_PROPAGATION_POLL_INTERVAL_SECONDS = 10.0
MAX_PROPAGATION_WAIT_SECONDS = 900.0

DEFAULT_OPERATION_TIMEOUT_SECONDS = 600.0
DEFAULT_OPERATION_POLL_INTERVAL_SECONDS = 5.0

DEFAULT_PROVIDER_REGISTRATION_MAX_WAIT_SECONDS = 60.0

# 0 disables the run-level deadline
DEFAULT_RUN_TIMEOUT_SECONDS = 0.0

MAX_AUTH_RETRIES = 3
RETRY_BACKOFF_BASE_SECONDS = 2.0
RETRY_BACKOFF_MAX_SECONDS = 30.0

# Storage account names: 3-24 lowercase alphanumerics, suffix takes 6
MAX_STORAGE_ACCOUNT_PREFIX_LENGTH = 18
MAX_RESOURCE_GROUP_NAME_LENGTH = 90
MAX_PLAN_FILE_SIZE_BYTES = 256 * 1024

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_STORAGE_PREFIX_PATTERN = r"^[a-z0-9]{3,18}$"
VALID_BILLING_SCOPE_PATTERN = (
    r"^/providers/microsoft\.billing/billingaccounts/[^/]+(/billingprofiles/[^/]+)?/?$"
)

DEFAULT_AUTH_STRATEGIES: tuple[AuthStrategyName, ...] = (
    AuthStrategyName.AMBIENT,
    AuthStrategyName.SERVICE_PRINCIPAL,
)


@dataclass(frozen=True)
class ServicePrincipalSettings:
    """Explicitly configured fallback service principal.

    Only used when ``service_principal`` is part of the strategy list.
    The secret never appears in logs.
    """

    tenant_id: str | None = None
    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)

    @property
    def is_complete(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


@dataclass(frozen=True)
class Config:
    """Run configuration loaded from environment variables and CLI flags.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    host_subscription_id: str

    location: str = DEFAULT_LOCATION
    resource_group: str = DEFAULT_RESOURCE_GROUP
    storage_account_prefix: str = DEFAULT_STORAGE_ACCOUNT_PREFIX

    # Paths
    state_file: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILE))
    plan_file: Path | None = None

    # Scoping: empty means "all visible targets"
    target_ids: tuple[str, ...] = ()

    # Principal that reads the exported data (gets Storage Blob Data Reader)
    consumer_principal_id: str | None = None

    # Billing-scope export covering non-CSP subscriptions
    billing_scope: str | None = None
    discover_billing_scope: bool = False
    force_per_subscription_exports: bool = False

    # Authentication
    auth_strategies: tuple[AuthStrategyName, ...] = DEFAULT_AUTH_STRATEGIES
    managed_identity_client_id: str | None = None
    service_principal: ServicePrincipalSettings = field(default_factory=ServicePrincipalSettings)

    # Concurrency and timing
    max_workers: int = DEFAULT_MAX_WORKERS
    propagation_max_wait_seconds: float = DEFAULT_PROPAGATION_MAX_WAIT_SECONDS
    propagation_poll_interval_seconds: float = DEFAULT_PROPAGATION_POLL_INTERVAL_SECONDS
    proceed_on_propagation_timeout: bool = True
    operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS
    operation_poll_interval_seconds: float = DEFAULT_OPERATION_POLL_INTERVAL_SECONDS
    run_timeout_seconds: float = DEFAULT_RUN_TIMEOUT_SECONDS
    provider_registration_max_wait_seconds: float = DEFAULT_PROVIDER_REGISTRATION_MAX_WAIT_SECONDS

    # Behavior
    dry_run: bool = False
    force: bool = False
    skip_automation: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.host_subscription_id:
            errors.append("HOST_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.host_subscription_id.lower()):
            errors.append(
                f"HOST_SUBSCRIPTION_ID must be a valid GUID: {self.host_subscription_id}"
            )

        if not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if not self.resource_group:
            errors.append("EXPORT_RESOURCE_GROUP must not be empty")
        elif len(self.resource_group) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"EXPORT_RESOURCE_GROUP exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )

        if not re.match(VALID_STORAGE_PREFIX_PATTERN, self.storage_account_prefix):
            errors.append(
                "STORAGE_ACCOUNT_PREFIX must be 3-"
                f"{MAX_STORAGE_ACCOUNT_PREFIX_LENGTH} lowercase alphanumerics: "
                f"{self.storage_account_prefix}"
            )

        for target_id in self.target_ids:
            if not re.match(VALID_SUBSCRIPTION_ID_PATTERN, target_id.lower()):
                errors.append(f"TARGET_IDS contains an invalid subscription id: {target_id}")

        if self.billing_scope and not re.match(VALID_BILLING_SCOPE_PATTERN, self.billing_scope.lower()):
            errors.append(
                "BILLING_SCOPE must look like /providers/Microsoft.Billing/billingAccounts/<id>"
                f"[/billingProfiles/<id>]: {self.billing_scope}"
            )

        if not self.auth_strategies:
            errors.append("AUTH_STRATEGIES must name at least one strategy")
        if (
            AuthStrategyName.SERVICE_PRINCIPAL in self.auth_strategies
            and self.service_principal.client_id
            and not self.service_principal.is_complete
        ):
            errors.append(
                "FALLBACK_TENANT_ID, FALLBACK_CLIENT_ID and FALLBACK_CLIENT_SECRET "
                "must all be set for the service_principal strategy"
            )

        if not (MIN_MAX_WORKERS <= self.max_workers <= MAX_MAX_WORKERS):
            errors.append(
                f"MAX_WORKERS must be between {MIN_MAX_WORKERS} and {MAX_MAX_WORKERS}"
            )

        if not (0 <= self.propagation_max_wait_seconds <= MAX_PROPAGATION_WAIT_SECONDS):
            errors.append(
                f"PROPAGATION_MAX_WAIT must be between 0 and {MAX_PROPAGATION_WAIT_SECONDS} seconds"
            )
        if self.propagation_poll_interval_seconds <= 0:
            errors.append("PROPAGATION_POLL_INTERVAL must be positive")
        if self.operation_timeout_seconds <= 0:
            errors.append("OPERATION_TIMEOUT must be positive")
        if self.operation_poll_interval_seconds <= 0:
            errors.append("OPERATION_POLL_INTERVAL must be positive")
        if self.run_timeout_seconds < 0:
            errors.append("RUN_TIMEOUT must not be negative")
        if self.provider_registration_max_wait_seconds < 0:
            errors.append("PROVIDER_REGISTRATION_MAX_WAIT must not be negative")

        if self.plan_file is not None and not self.plan_file.exists():
            errors.append(f"Plan file does not exist: {self.plan_file}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def storage_account_name(self) -> str:
        """Deterministic storage account name on the host subscription."""
        return f"{self.storage_account_prefix}{self.host_subscription_id[-6:]}".lower()

    @property
    def storage_account_id(self) -> str:
        return (
            f"/subscriptions/{self.host_subscription_id}/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.Storage/storageAccounts/{self.storage_account_name}"
        )

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            HOST_SUBSCRIPTION_ID: Subscription hosting the shared storage account
            AZURE_LOCATION: Region for shared infrastructure (default: uksouth)
            EXPORT_RESOURCE_GROUP: Resource group for the storage account
            STORAGE_ACCOUNT_PREFIX: Storage account name prefix
            STATE_FILE: Path of the reconciliation state file
            PLAN_FILE: Optional YAML plan overriding variants and skip rules
            TARGET_IDS: Comma-separated allowlist of subscription ids (default: all)
            CONSUMER_PRINCIPAL_ID: Object id granted read access to exported data
            BILLING_SCOPE: Billing account or profile scope for one export covering
                every non-CSP subscription
            DISCOVER_BILLING_SCOPE: If "true", use the first visible billing profile
            FORCE_PER_SUB_EXPORTS: If "true", never use a billing-scope export
            AUTH_STRATEGIES: Comma-separated strategy order (ambient,cli,service_principal)
            MANAGED_IDENTITY_CLIENT_ID: Client id of a user-assigned identity
            FALLBACK_TENANT_ID / FALLBACK_CLIENT_ID / FALLBACK_CLIENT_SECRET:
                Explicit service principal for the fallback strategy
            MAX_WORKERS: Concurrent target workers (default: 4)
            PROPAGATION_MAX_WAIT: Seconds to wait for RBAC propagation (default: 120)
            PROPAGATION_POLL_INTERVAL: Seconds between capability checks (default: 10)
            OPERATION_TIMEOUT: Seconds before an operation poll gives up (default: 600)
            OPERATION_POLL_INTERVAL: Seconds between operation polls (default: 5)
            RUN_TIMEOUT: Run-level deadline in seconds, 0 disables (default: 0)
            PROVIDER_REGISTRATION_MAX_WAIT: Seconds to wait for a target's provider
                registration (default: 60)
            DRY_RUN: If "true", log mutations instead of performing them
            FORCE: If "true", skip confirmation prompts
            SKIP_AUTOMATION: If "true", do not deploy the auto-export policy
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_list(key: str) -> tuple[str, ...]:
            value = os.environ.get(key, "")
            return tuple(item.strip() for item in value.split(",") if item.strip())

        def get_strategies(values: tuple[str, ...]) -> tuple[AuthStrategyName, ...]:
            if not values:
                return DEFAULT_AUTH_STRATEGIES
            try:
                return tuple(AuthStrategyName(v) for v in values)
            except ValueError as e:
                valid = [s.value for s in AuthStrategyName]
                raise ConfigurationError(f"AUTH_STRATEGIES must be drawn from {valid}") from e

        plan_file = os.environ.get("PLAN_FILE")

        return cls(
            host_subscription_id=os.environ.get("HOST_SUBSCRIPTION_ID", ""),
            location=os.environ.get("AZURE_LOCATION", DEFAULT_LOCATION),
            resource_group=os.environ.get("EXPORT_RESOURCE_GROUP", DEFAULT_RESOURCE_GROUP),
            storage_account_prefix=os.environ.get(
                "STORAGE_ACCOUNT_PREFIX", DEFAULT_STORAGE_ACCOUNT_PREFIX
            ),
            state_file=Path(os.environ.get("STATE_FILE", DEFAULT_STATE_FILE)),
            plan_file=Path(plan_file) if plan_file else None,
            target_ids=get_list("TARGET_IDS"),
            consumer_principal_id=os.environ.get("CONSUMER_PRINCIPAL_ID") or None,
            billing_scope=os.environ.get("BILLING_SCOPE") or None,
            discover_billing_scope=get_bool("DISCOVER_BILLING_SCOPE", False),
            force_per_subscription_exports=get_bool("FORCE_PER_SUB_EXPORTS", False),
            auth_strategies=get_strategies(get_list("AUTH_STRATEGIES")),
            managed_identity_client_id=os.environ.get("MANAGED_IDENTITY_CLIENT_ID") or None,
            service_principal=ServicePrincipalSettings(
                tenant_id=os.environ.get("FALLBACK_TENANT_ID") or None,
                client_id=os.environ.get("FALLBACK_CLIENT_ID") or None,
                client_secret=os.environ.get("FALLBACK_CLIENT_SECRET") or None,
            ),
            max_workers=get_int("MAX_WORKERS", DEFAULT_MAX_WORKERS),
            propagation_max_wait_seconds=get_float(
                "PROPAGATION_MAX_WAIT", DEFAULT_PROPAGATION_MAX_WAIT_SECONDS
            ),
            propagation_poll_interval_seconds=get_float(
                "PROPAGATION_POLL_INTERVAL", DEFAULT_PROPAGATION_POLL_INTERVAL_SECONDS
            ),
            proceed_on_propagation_timeout=get_bool("PROCEED_ON_PROPAGATION_TIMEOUT", True),
            operation_timeout_seconds=get_float(
                "OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            operation_poll_interval_seconds=get_float(
                "OPERATION_POLL_INTERVAL", DEFAULT_OPERATION_POLL_INTERVAL_SECONDS
            ),
            run_timeout_seconds=get_float("RUN_TIMEOUT", DEFAULT_RUN_TIMEOUT_SECONDS),
            provider_registration_max_wait_seconds=get_float(
                "PROVIDER_REGISTRATION_MAX_WAIT", DEFAULT_PROVIDER_REGISTRATION_MAX_WAIT_SECONDS
            ),
            dry_run=get_bool("DRY_RUN", False),
            force=get_bool("FORCE", False),
            skip_automation=get_bool("SKIP_AUTOMATION", False),
        )
