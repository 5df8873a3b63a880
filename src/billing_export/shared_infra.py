"""Shared prerequisites provisioned once per run on the host subscription.

Order:
1. Register the resource providers exports depend on
2. Ensure the resource group
3. Deploy the storage account, blob service and export container
4. Grant Storage Blob Data Reader on the account to the consumer principal

Every step is idempotent: ARM deployments are incremental and the role
assignment name is a uuid5 of principal, role and scope, so a repeat run
converges on the same resources. Any failure here is fatal for the run
because every target exports into this storage account.

IMPLEMENTATION NOTE:
Uses ARM deployments instead of azure-mgmt-storage / azure-mgmt-authorization
so the SDK footprint stays at azure-mgmt-resource.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    Deployment,
    DeploymentMode,
    DeploymentProperties,
    ResourceGroup,
)

from .config import Config
from .context import RunContext, run_blocking
from .errors import SharedInfraError
from .models import PlanSpec

logger = logging.getLogger(__name__)

REQUIRED_PROVIDERS: tuple[str, ...] = (
    "Microsoft.Storage",
    "Microsoft.CostManagement",
    "Microsoft.CostManagementExports",
    "Microsoft.Insights",
)

STORAGE_API_VERSION = "2023-01-01"
ROLE_ASSIGNMENT_API_VERSION = "2022-04-01"
RESOURCE_GROUP_TEMPLATE_SCHEMA = (
    "https://schema.management.azure.com/schemas/2019-04-01/deploymentTemplate.json#"
)

# Well-known built-in role GUID, identical across tenants
STORAGE_BLOB_DATA_READER_ROLE_ID = "2a2b9908-6ea1-4ae2-8e65-a410df84e7d1"

SHARED_INFRA_DEPLOYMENT_TIMEOUT_SECONDS = 600
PROVIDER_REGISTRATION_TIMEOUT_SECONDS = 300
PROVIDER_POLL_INTERVAL_SECONDS = 10
MANAGED_BY_TAG = "billing-export-operator"


def role_assignment_name(principal_id: str, role_id: str, scope: str) -> str:
    """Deterministic role assignment name so repeat grants are no-ops."""
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, f"{principal_id}:{role_id}:{scope}"))


def build_storage_template(account_name: str, container: str, location: str) -> dict[str, Any]:
    """Resource-group template: StorageV2 account, blob service and container."""
    return {
        "$schema": RESOURCE_GROUP_TEMPLATE_SCHEMA,
        "contentVersion": "1.0.0.0",
        "resources": [
            {
                "type": "Microsoft.Storage/storageAccounts",
                "apiVersion": STORAGE_API_VERSION,
                "name": account_name,
                "location": location,
                "sku": {"name": "Standard_LRS"},
                "kind": "StorageV2",
                "tags": {"managedBy": MANAGED_BY_TAG},
                "properties": {
                    "accessTier": "Hot",
                    "minimumTlsVersion": "TLS1_2",
                    "allowBlobPublicAccess": False,
                    "supportsHttpsTrafficOnly": True,
                },
            },
            {
                "type": "Microsoft.Storage/storageAccounts/blobServices",
                "apiVersion": STORAGE_API_VERSION,
                "name": f"{account_name}/default",
                "dependsOn": [
                    f"[resourceId('Microsoft.Storage/storageAccounts', '{account_name}')]"
                ],
                "properties": {},
            },
            {
                "type": "Microsoft.Storage/storageAccounts/blobServices/containers",
                "apiVersion": STORAGE_API_VERSION,
                "name": f"{account_name}/default/{container}",
                "dependsOn": [
                    "[resourceId('Microsoft.Storage/storageAccounts/blobServices', "
                    f"'{account_name}', 'default')]"
                ],
                "properties": {"publicAccess": "None"},
            },
        ],
        "outputs": {
            "storageAccountId": {
                "type": "string",
                "value": f"[resourceId('Microsoft.Storage/storageAccounts', '{account_name}')]",
            }
        },
    }


def build_role_assignment_template(
    account_name: str, assignment_name: str, role_id: str, principal_id: str
) -> dict[str, Any]:
    """Resource-group template granting a role scoped to the storage account."""
    return {
        "$schema": RESOURCE_GROUP_TEMPLATE_SCHEMA,
        "contentVersion": "1.0.0.0",
        "resources": [
            {
                "type": "Microsoft.Authorization/roleAssignments",
                "apiVersion": ROLE_ASSIGNMENT_API_VERSION,
                "name": assignment_name,
                "scope": f"[resourceId('Microsoft.Storage/storageAccounts', '{account_name}')]",
                "properties": {
                    "roleDefinitionId": (
                        "[subscriptionResourceId("
                        f"'Microsoft.Authorization/roleDefinitions', '{role_id}')]"
                    ),
                    "principalId": principal_id,
                    "principalType": "ServicePrincipal",
                    "description": "Read access to billing exports",
                },
            }
        ],
    }


@dataclass
class SharedInfraResult:
    """Result of the shared infrastructure phase."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    providers_registered: list[str] = field(default_factory=list)
    storage_account_id: str | None = None
    role_assignment: str | None = None
    dry_run: bool = False

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


class SharedInfraProvisioner:
    """Provisions and inspects the host subscription's shared resources."""

    def __init__(
        self,
        config: Config,
        plan: PlanSpec,
        credential: TokenCredential,
        ctx: RunContext,
    ) -> None:
        self._config = config
        self._plan = plan
        self._ctx = ctx
        self._client = ResourceManagementClient(
            credential=credential,
            subscription_id=config.host_subscription_id,
        )

    # -------------------------------------------------------------------------
    # Read-only inspection
    # -------------------------------------------------------------------------

    async def provider_states(self) -> dict[str, str]:
        """Registration state of every required provider on the host."""
        states: dict[str, str] = {}
        for namespace in REQUIRED_PROVIDERS:
            try:
                provider = await run_blocking(self._client.providers.get, namespace)
                states[namespace] = provider.registration_state or "Unknown"
            except AzureError as e:
                logger.warning(
                    "Failed to read provider registration",
                    extra={"namespace": namespace, "error": str(e)},
                )
                states[namespace] = "Unknown"
        return states

    async def storage_account_exists(self) -> bool:
        try:
            await run_blocking(
                self._client.resources.get_by_id,
                resource_id=self._config.storage_account_id,
                api_version=STORAGE_API_VERSION,
            )
        except ResourceNotFoundError:
            return False
        return True

    # -------------------------------------------------------------------------
    # Provisioning
    # -------------------------------------------------------------------------

    async def provision(self) -> SharedInfraResult:
        """Ensure every shared prerequisite.

        Raises:
            SharedInfraError: If any step fails.
        """
        result = SharedInfraResult(dry_run=self._config.dry_run)

        try:
            result.providers_registered = await self._register_providers()
            await self._ensure_resource_group()
            result.storage_account_id = await self._deploy_storage()
            result.role_assignment = await self._grant_consumer_access()
        except TimeoutError as e:
            logger.error(
                "Shared infrastructure deployment timed out",
                extra={"timeout_seconds": SHARED_INFRA_DEPLOYMENT_TIMEOUT_SECONDS},
            )
            raise SharedInfraError(
                f"Deployment timeout after {SHARED_INFRA_DEPLOYMENT_TIMEOUT_SECONDS}s"
            ) from e
        except HttpResponseError as e:
            error_code = e.error.code if e.error else None
            logger.error(
                f"Shared infrastructure failed with Azure API error: {e}",
                extra={"status_code": e.status_code, "error_code": error_code},
            )
            raise SharedInfraError(f"Azure API error ({e.status_code}): {e.message}") from e
        except AzureError as e:
            logger.error(f"Shared infrastructure failed with Azure error: {e}")
            raise SharedInfraError(f"Azure error: {e}") from e

        result.end_time = datetime.now(UTC)
        logger.info(
            "Shared infrastructure ensured",
            extra={
                "storage_account_id": result.storage_account_id,
                "providers_registered": result.providers_registered,
                "dry_run": result.dry_run,
                "duration_seconds": round(result.duration_seconds, 1),
            },
        )
        return result

    async def _register_providers(self) -> list[str]:
        registered: list[str] = []
        for namespace, state in (await self.provider_states()).items():
            if state == "Registered":
                continue

            if self._config.dry_run:
                logger.info(
                    f"Would register provider {namespace}",
                    extra={"namespace": namespace, "state": state, "dry_run": True},
                )
                continue

            logger.info(
                "Registering provider", extra={"namespace": namespace, "state": state}
            )
            await run_blocking(self._client.providers.register, namespace)
            await self._wait_for_registration(namespace)
            registered.append(namespace)
        return registered

    async def _wait_for_registration(self, namespace: str) -> None:
        deadline = time.monotonic() + PROVIDER_REGISTRATION_TIMEOUT_SECONDS
        while time.monotonic() < deadline:
            provider = await run_blocking(self._client.providers.get, namespace)
            if provider.registration_state == "Registered":
                logger.info("Provider registered", extra={"namespace": namespace})
                return
            await self._ctx.sleep(PROVIDER_POLL_INTERVAL_SECONDS)

        # Registration continues server-side; later deployments surface any real failure
        logger.warning(
            "Provider registration still in progress",
            extra={"namespace": namespace, "timeout_seconds": PROVIDER_REGISTRATION_TIMEOUT_SECONDS},
        )

    async def _ensure_resource_group(self) -> None:
        name = self._config.resource_group
        if self._config.dry_run:
            logger.info(
                f"Would ensure resource group '{name}' in {self._config.location}",
                extra={"dry_run": True},
            )
            return

        rg = ResourceGroup(location=self._config.location, tags={"managedBy": MANAGED_BY_TAG})
        await run_blocking(
            self._client.resource_groups.create_or_update,
            resource_group_name=name,
            parameters=rg,
        )
        logger.info(f"Resource group '{name}' ensured in {self._config.location}")

    async def _deploy_storage(self) -> str:
        account_name = self._config.storage_account_name
        if self._config.dry_run:
            logger.info(
                f"Would deploy storage account '{account_name}' with container "
                f"'{self._plan.storage_container}'",
                extra={"dry_run": True},
            )
            return self._config.storage_account_id

        template = build_storage_template(
            account_name, self._plan.storage_container, self._config.location
        )
        await self._deploy(f"billing-export-storage-{int(time.time())}", template)
        logger.info(f"Storage account '{account_name}' ensured")
        return self._config.storage_account_id

    async def _grant_consumer_access(self) -> str | None:
        principal_id = self._config.consumer_principal_id
        if not principal_id:
            logger.info("No consumer principal configured, skipping storage read grant")
            return None

        scope = self._config.storage_account_id
        assignment = role_assignment_name(principal_id, STORAGE_BLOB_DATA_READER_ROLE_ID, scope)
        if self._config.dry_run:
            logger.info(
                "Would grant Storage Blob Data Reader on the storage account",
                extra={"principal_id": principal_id, "assignment": assignment, "dry_run": True},
            )
            return assignment

        template = build_role_assignment_template(
            self._config.storage_account_name,
            assignment,
            STORAGE_BLOB_DATA_READER_ROLE_ID,
            principal_id,
        )
        try:
            await self._deploy(f"billing-export-rbac-{int(time.time())}", template)
        except HttpResponseError as e:
            # Role assignment may already exist (409 Conflict) - that's OK
            if e.status_code != 409:
                raise
            logger.info("Storage Blob Data Reader already assigned", extra={"principal_id": principal_id})
            return assignment

        logger.info(
            "Granted Storage Blob Data Reader",
            extra={"principal_id": principal_id, "assignment": assignment},
        )
        return assignment

    async def _deploy(self, deployment_name: str, template: dict[str, Any]) -> Any:
        deployment = Deployment(
            properties=DeploymentProperties(
                mode=DeploymentMode.INCREMENTAL,
                template=template,
                parameters={},
            )
        )
        poller = await run_blocking(
            self._client.deployments.begin_create_or_update,
            resource_group_name=self._config.resource_group,
            deployment_name=deployment_name,
            parameters=deployment,
        )
        return await asyncio.wait_for(
            run_blocking(poller.result),
            timeout=SHARED_INFRA_DEPLOYMENT_TIMEOUT_SECONDS,
        )

    # -------------------------------------------------------------------------
    # Removal
    # -------------------------------------------------------------------------

    async def delete_resource_group(self) -> bool:
        """Start deleting the resource group holding the storage account and its data.

        Returns:
            True if a deletion was started, False if the group does not exist.

        Raises:
            SharedInfraError: If the request fails.
        """
        name = self._config.resource_group
        if self._config.dry_run:
            logger.info(f"Would delete resource group '{name}'", extra={"dry_run": True})
            return False

        try:
            if not await run_blocking(self._client.resource_groups.check_existence, name):
                logger.info(f"Resource group '{name}' not found")
                return False
            # Deletion continues server-side
            await run_blocking(self._client.resource_groups.begin_delete, name)
        except AzureError as e:
            raise SharedInfraError(f"Failed to delete resource group {name}: {e}") from e

        logger.info(f"Deleting resource group '{name}'")
        return True
