"""Cloud Resource API boundary.

The engine talks to the control plane only through ``CloudResourceApi``.
``AzureCloudApi`` implements it with the Azure Resource Manager SDK and
parses every provider response into typed values here, so the rest of the
engine never inspects raw status codes or message text.

ARM usage:
- describe: generic ``resources.get_by_id`` on the export resource id
- create: subscription-scope ARM deployment of an inline export template,
  started without client-side polling (the handle is the deployment name)
- poll: ``deployments.get_at_subscription_scope`` provisioning state
- capability: effective permissions of the caller at the target scope

Billing-scope targets have no subscription to deploy into, so their export
is written with a direct PUT and completes synchronously.
"""

from __future__ import annotations

import fnmatch
import logging
import re
import time
from datetime import UTC, datetime
from typing import Any, Protocol

from azure.core.credentials import TokenCredential
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.core.rest import HttpRequest
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    Deployment,
    DeploymentMode,
    DeploymentProperties,
)

from .config import Config
from .errors import (
    ExportOperatorError,
    PermanentAuthorizationDenied,
    ProviderError,
    TransientAuthorizationError,
    VariantUnsupported,
)
from .models import (
    CreateOutcome,
    ExportVariant,
    OperationHandle,
    PlanSpec,
    ResourceState,
    Target,
    operation_status_from_provisioning_state,
)

logger = logging.getLogger(__name__)

ARM_SCOPE = "https://management.azure.com/.default"
COST_MANAGEMENT_NAMESPACE = "Microsoft.CostManagement"
EXPORT_API_VERSION = "2023-08-01"
PERMISSIONS_API_VERSION = "2022-04-01"
BILLING_API_VERSION = "2024-04-01"
PROVIDER_REGISTERED = "Registered"
EXPORT_END_DATE = "2099-12-31T00:00:00Z"
SUBSCRIPTION_TEMPLATE_SCHEMA = (
    "https://schema.management.azure.com/schemas/2018-05-01/subscriptionDeploymentTemplate.json#"
)
MAX_DEPLOYMENT_NAME_LENGTH = 64

# Provider signals, matched against error codes and messages
UNSUPPORTED_VARIANT_PATTERN = re.compile(r"not supported|invalid.*type|not available", re.IGNORECASE)
TRANSIENT_AUTH_CODES = frozenset({"AuthorizationFailed", "LinkedAuthorizationFailed"})
CAPABILITY_AUTH_CODES = frozenset({"RBACAccessDenied"})
PERMANENT_AUTH_CODES = frozenset(
    {"DisallowedProvider", "RequestDisallowedByPolicy", "InvalidAuthenticationTokenTenant"}
)


class CloudResourceApi(Protocol):
    """Narrow control-plane interface consumed by the engine.

    Every call carries its own credential so concurrent workers never share
    an identity.
    """

    def authorize(self, credential: TokenCredential, target: Target) -> None:
        """Raise if the credential cannot act on the target."""
        ...

    def describe(self, credential: TokenCredential, target: Target) -> ResourceState: ...

    def create(
        self, credential: TokenCredential, target: Target, variant: ExportVariant
    ) -> CreateOutcome: ...

    def poll_operation(
        self, credential: TokenCredential, handle: OperationHandle
    ) -> OperationHandle: ...

    def check_capability(
        self, credential: TokenCredential, target: Target, capability: str
    ) -> bool: ...

    def provider_state(self, credential: TokenCredential, target: Target, namespace: str) -> str: ...

    def register_provider(self, credential: TokenCredential, target: Target, namespace: str) -> None: ...

    def delete(self, credential: TokenCredential, target: Target) -> bool:
        """Delete the target's export. Returns False if it did not exist."""
        ...

    def discover_billing_scope(self, credential: TokenCredential) -> str | None:
        """First billing profile visible to the credential, if any."""
        ...


# =============================================================================
# Error classification
# =============================================================================


def classify_failure(
    message: str,
    *,
    status_code: int | None = None,
    code: str | None = None,
) -> ExportOperatorError:
    """Map a provider failure onto the engine's error taxonomy."""
    if code in PERMANENT_AUTH_CODES:
        return PermanentAuthorizationDenied(f"{code}: {message}")

    if status_code in (401, 403) or code in TRANSIENT_AUTH_CODES | CAPABILITY_AUTH_CODES:
        if status_code == 403 and code is None:
            return PermanentAuthorizationDenied(message)
        return TransientAuthorizationError(
            f"{code or status_code}: {message}",
            capability=code in CAPABILITY_AUTH_CODES,
        )

    if UNSUPPORTED_VARIANT_PATTERN.search(message):
        return VariantUnsupported(message)

    return ProviderError(message, status_code=status_code, code=code)


def classify_http_error(error: HttpResponseError) -> ExportOperatorError:
    """Classify an Azure SDK HTTP error."""
    code = error.error.code if error.error else None
    message = error.message or str(error)
    return classify_failure(message, status_code=error.status_code, code=code)


def permission_allows(permissions: list[dict[str, Any]], action: str) -> bool:
    """Evaluate effective ARM permissions for a single action.

    An action is allowed when some permission block lists it (wildcards
    allowed) in ``actions`` and does not exclude it in ``notActions``.
    """
    wanted = action.lower()
    for block in permissions:
        actions = [a.lower() for a in block.get("actions", [])]
        not_actions = [a.lower() for a in block.get("notActions", [])]
        if any(fnmatch.fnmatchcase(wanted, pattern) for pattern in actions) and not any(
            fnmatch.fnmatchcase(wanted, pattern) for pattern in not_actions
        ):
            return True
    return False


def _flatten_error(error: Any) -> tuple[str, str | None]:
    """Collect the message and innermost code of an ARM error response."""
    if error is None:
        return "", None
    messages: list[str] = []
    code: str | None = None
    pending = [error]
    while pending:
        current = pending.pop(0)
        if getattr(current, "message", None):
            messages.append(current.message)
        if getattr(current, "code", None):
            code = current.code
        pending.extend(getattr(current, "details", None) or [])
    return "; ".join(messages), code


# =============================================================================
# Azure implementation
# =============================================================================


def build_export_properties(
    variant: ExportVariant,
    storage_account_id: str,
    container: str,
    folder: str,
    start_date: datetime | None = None,
) -> dict[str, Any]:
    """Export resource properties: daily month-to-date CSV into the shared container."""
    start = (start_date or datetime.now(UTC)).strftime("%Y-%m-%dT00:00:00Z")
    return {
        "schedule": {
            "status": "Active",
            "recurrence": "Daily",
            "recurrencePeriod": {"from": start, "to": EXPORT_END_DATE},
        },
        "format": "Csv",
        "deliveryInfo": {
            "destination": {
                "resourceId": storage_account_id,
                "container": container,
                "rootFolderPath": folder,
                "type": "AzureBlob",
            }
        },
        "definition": {
            "type": variant.value,
            "timeframe": "MonthToDate",
            "dataSet": {"granularity": "Daily"},
        },
    }


def build_export_template(
    export_name: str,
    variant: ExportVariant,
    storage_account_id: str,
    container: str,
    folder: str,
    start_date: datetime | None = None,
) -> dict[str, Any]:
    """Inline subscription-scope ARM template for one cost export."""
    return {
        "$schema": SUBSCRIPTION_TEMPLATE_SCHEMA,
        "contentVersion": "1.0.0.0",
        "resources": [
            {
                "type": "Microsoft.CostManagement/exports",
                "apiVersion": EXPORT_API_VERSION,
                "name": export_name,
                "properties": build_export_properties(
                    variant, storage_account_id, container, folder, start_date
                ),
            }
        ],
        "outputs": {"exportName": {"type": "string", "value": export_name}},
    }


def parse_export_state(properties: dict[str, Any] | None) -> ResourceState:
    """Parse export properties returned by a describe call."""
    properties = properties or {}
    definition = properties.get("definition") or {}
    destination = (properties.get("deliveryInfo") or {}).get("destination") or {}
    schedule = properties.get("schedule") or {}

    variant: ExportVariant | None
    try:
        variant = ExportVariant(definition.get("type"))
    except ValueError:
        variant = None

    return ResourceState(
        exists=True,
        variant=variant,
        destination_id=destination.get("resourceId"),
        schedule_active=str(schedule.get("status", "")).lower() == "active",
        config=properties,
    )


def send_arm_request(client: ResourceManagementClient, request: HttpRequest) -> Any:
    """Send a raw ARM request through the client's authenticated pipeline.

    Returns the parsed JSON body (None when empty).

    Raises:
        ExportOperatorError: Classified HTTP failure or an unparseable body.
    """
    # _send_request is the raw-request hook of generated mgmt clients;
    # present from azure-mgmt-resource 21 through 24 (pinned in pyproject)
    response = client._send_request(request)
    try:
        response.raise_for_status()
    except HttpResponseError as e:
        raise classify_http_error(e) from e
    if not response.text():
        return None
    try:
        return response.json()
    except ValueError as e:
        raise ProviderError(
            f"Unparseable response from {request.url}: {e}", status_code=response.status_code
        ) from e


class AzureCloudApi:
    """CloudResourceApi backed by Azure Resource Manager."""

    def __init__(self, config: Config, plan: PlanSpec) -> None:
        self._config = config
        self._plan = plan

    def _client(self, credential: TokenCredential, subscription_id: str) -> ResourceManagementClient:
        return ResourceManagementClient(credential=credential, subscription_id=subscription_id)

    def _client_for(self, credential: TokenCredential, target: Target) -> ResourceManagementClient:
        # Billing scopes sit outside any subscription; scope-relative calls
        # go through the host subscription's client
        if target.is_billing_scope:
            return self._client(credential, self._config.host_subscription_id)
        return self._client(credential, target.id)

    def export_resource_id(self, target: Target) -> str:
        return (
            f"{target.scope}/providers/Microsoft.CostManagement/exports/"
            f"{self._plan.resource_name(target.id)}"
        )

    def authorize(self, credential: TokenCredential, target: Target) -> None:
        """Token acquisition plus a read on the target.

        Subscriptions read their provider registration, billing scopes read
        the scope itself.
        """
        credential.get_token(ARM_SCOPE)
        client = self._client_for(credential, target)
        if target.is_billing_scope:
            send_arm_request(
                client, HttpRequest("GET", target.scope, params={"api-version": BILLING_API_VERSION})
            )
            return
        try:
            client.providers.get(COST_MANAGEMENT_NAMESPACE)
        except HttpResponseError as e:
            raise classify_http_error(e) from e

    def describe(self, credential: TokenCredential, target: Target) -> ResourceState:
        client = self._client_for(credential, target)
        try:
            resource = client.resources.get_by_id(
                resource_id=self.export_resource_id(target),
                api_version=EXPORT_API_VERSION,
            )
        except ResourceNotFoundError:
            return ResourceState.absent()
        except HttpResponseError as e:
            if e.status_code == 404:
                return ResourceState.absent()
            raise classify_http_error(e) from e

        return parse_export_state(resource.properties if resource else None)

    def create(
        self, credential: TokenCredential, target: Target, variant: ExportVariant
    ) -> CreateOutcome:
        if target.is_billing_scope:
            return self._create_at_billing_scope(credential, target, variant)

        export_name = self._plan.resource_name(target.id)
        template = build_export_template(
            export_name=export_name,
            variant=variant,
            storage_account_id=self._config.storage_account_id,
            container=self._plan.storage_container,
            folder=self._plan.folder_for(target.id),
        )
        deployment_name = f"{export_name}-{variant.value.lower()}-{int(time.time())}"[
            :MAX_DEPLOYMENT_NAME_LENGTH
        ]
        deployment = Deployment(
            location=self._config.location,
            properties=DeploymentProperties(
                mode=DeploymentMode.INCREMENTAL,
                template=template,
                parameters={},
            ),
        )

        client = self._client(credential, target.id)
        try:
            client.deployments.begin_create_or_update_at_subscription_scope(
                deployment_name=deployment_name,
                parameters=deployment,
                polling=False,
            )
        except HttpResponseError as e:
            raise classify_http_error(e) from e

        logger.info(
            "Started export deployment",
            extra={
                "target_id": target.id,
                "deployment_name": deployment_name,
                "variant": variant.value,
            },
        )
        return CreateOutcome(
            handle=OperationHandle(id=deployment_name, target_id=target.id, variant=variant)
        )

    def _create_at_billing_scope(
        self, credential: TokenCredential, target: Target, variant: ExportVariant
    ) -> CreateOutcome:
        body = {
            "location": self._config.location,
            "properties": build_export_properties(
                variant=variant,
                storage_account_id=self._config.storage_account_id,
                container=self._plan.storage_container,
                folder=self._plan.folder_for(target.id),
            ),
        }
        request = HttpRequest(
            "PUT",
            self.export_resource_id(target),
            params={"api-version": EXPORT_API_VERSION},
            json=body,
        )
        send_arm_request(self._client_for(credential, target), request)
        logger.info(
            "Created billing-scope export",
            extra={"target_id": target.id, "variant": variant.value},
        )
        return CreateOutcome()

    def poll_operation(
        self, credential: TokenCredential, handle: OperationHandle
    ) -> OperationHandle:
        client = self._client(credential, handle.target_id)
        try:
            deployment = client.deployments.get_at_subscription_scope(handle.id)
        except ResourceNotFoundError:
            # Deployment records can lag the PUT that created them
            return handle
        properties = deployment.properties
        status = operation_status_from_provisioning_state(
            properties.provisioning_state if properties else None
        )
        message, code = _flatten_error(properties.error if properties else None)
        return OperationHandle(
            id=handle.id,
            target_id=handle.target_id,
            variant=handle.variant,
            status=status,
            started_at=handle.started_at,
            error=f"{code}: {message}" if code and message else (message or None),
        )

    def check_capability(
        self, credential: TokenCredential, target: Target, capability: str
    ) -> bool:
        if target.is_billing_scope:
            # Billing roles are not exposed through ARM effective permissions;
            # the create call surfaces a denial
            return True
        request = HttpRequest(
            "GET",
            f"{target.scope}/providers/Microsoft.Authorization/permissions",
            params={"api-version": PERMISSIONS_API_VERSION},
        )
        body = send_arm_request(self._client_for(credential, target), request) or {}
        return permission_allows(body.get("value", []), capability)

    def provider_state(self, credential: TokenCredential, target: Target, namespace: str) -> str:
        client = self._client(credential, target.id)
        try:
            provider = client.providers.get(namespace)
        except HttpResponseError as e:
            raise classify_http_error(e) from e
        return provider.registration_state or "Unknown"

    def register_provider(self, credential: TokenCredential, target: Target, namespace: str) -> None:
        client = self._client(credential, target.id)
        try:
            client.providers.register(namespace)
        except HttpResponseError as e:
            raise classify_http_error(e) from e
        logger.info("Requested provider registration", extra={"target_id": target.id, "namespace": namespace})

    def delete(self, credential: TokenCredential, target: Target) -> bool:
        client = self._client_for(credential, target)
        try:
            poller = client.resources.begin_delete_by_id(
                resource_id=self.export_resource_id(target),
                api_version=EXPORT_API_VERSION,
            )
            poller.result()
        except ResourceNotFoundError:
            return False
        except HttpResponseError as e:
            if e.status_code == 404:
                return False
            raise classify_http_error(e) from e
        return True

    def discover_billing_scope(self, credential: TokenCredential) -> str | None:
        client = self._client(credential, self._config.host_subscription_id)
        accounts = send_arm_request(
            client,
            HttpRequest(
                "GET",
                "/providers/Microsoft.Billing/billingAccounts",
                params={"api-version": BILLING_API_VERSION},
            ),
        ) or {}
        account_names = [a.get("name") for a in accounts.get("value", []) if a.get("name")]
        if not account_names:
            logger.info("No billing accounts visible")
            return None

        profiles = send_arm_request(
            client,
            HttpRequest(
                "GET",
                f"/providers/Microsoft.Billing/billingAccounts/{account_names[0]}/billingProfiles",
                params={"api-version": BILLING_API_VERSION},
            ),
        ) or {}
        profile_ids = [p.get("id") for p in profiles.get("value", []) if p.get("id")]
        if not profile_ids:
            logger.info("No billing profiles visible", extra={"billing_account": account_names[0]})
            return None
        return profile_ids[0]
