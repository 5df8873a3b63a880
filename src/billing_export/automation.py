"""Auto-export policy for subscriptions created after the run.

CSP subscriptions appear over time without anyone running the engine, so a
DeployIfNotExists policy on the host subscription creates the same export
for them. The definition, its assignment (with a system-assigned identity),
the identity's Contributor grant and a remediation task are deployed as one
subscription-scope ARM deployment.

A failure here is reported in the run summary but does not fail the run.
Teardown removes the same resources in reverse dependency order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from azure.core.rest import HttpRequest
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    Deployment,
    DeploymentMode,
    DeploymentProperties,
)

from .cloud_api import (
    EXPORT_API_VERSION,
    EXPORT_END_DATE,
    SUBSCRIPTION_TEMPLATE_SCHEMA,
    send_arm_request,
)
from .config import Config
from .context import run_blocking
from .errors import ExportOperatorError, ProviderError
from .models import ExportVariant, PlanSpec, Target, TargetClassification

logger = logging.getLogger(__name__)

POLICY_DEFINITION_NAME = "deploy-billing-export"
POLICY_ASSIGNMENT_NAME = "deploy-billing-export-a"
REMEDIATION_NAME = "remediate-billing-exports"
POLICY_API_VERSION = "2021-06-01"
REMEDIATION_API_VERSION = "2021-10-01"
ROLE_ASSIGNMENT_API_VERSION = "2022-04-01"
CONTRIBUTOR_ROLE_ID = "b24988ac-6180-42a0-ab88-20f7382dd24c"
AUTOMATION_DEPLOYMENT_TIMEOUT_SECONDS = 600

# ARM expression evaluated per subscription when the policy deploys
EXPORT_NAME_EXPRESSION = (
    "[concat(parameters('exportNamePrefix'), '-', substring(subscription().subscriptionId, "
    "sub(length(subscription().subscriptionId), 6), 6))]"
)


def escape_arm_expressions(value: Any) -> Any:
    """Escape ``[...]`` strings so the outer deployment passes them through literally."""
    if isinstance(value, str):
        return "[" + value if value.startswith("[") else value
    if isinstance(value, dict):
        return {k: escape_arm_expressions(v) for k, v in value.items()}
    if isinstance(value, list):
        return [escape_arm_expressions(v) for v in value]
    return value


def build_policy_rule(variant: ExportVariant) -> dict[str, Any]:
    """DeployIfNotExists rule creating one export per subscription."""
    export_template = {
        "$schema": SUBSCRIPTION_TEMPLATE_SCHEMA,
        "contentVersion": "1.0.0.0",
        "parameters": {
            "storageAccountResourceId": {"type": "string"},
            "storageContainerName": {"type": "string"},
            "exportNamePrefix": {"type": "string"},
            "exportFolderPrefix": {"type": "string"},
            "subscriptionId": {"type": "string"},
            "startDate": {"type": "string", "defaultValue": "[utcNow('yyyy-MM-dd')]"},
        },
        "variables": {
            "exportName": (
                "[concat(parameters('exportNamePrefix'), '-', substring(parameters('subscriptionId'), "
                "sub(length(parameters('subscriptionId')), 6), 6))]"
            ),
            "rootFolderPath": (
                "[concat(parameters('exportFolderPrefix'), '/subscriptions/', "
                "parameters('subscriptionId'))]"
            ),
        },
        "resources": [
            {
                "type": "Microsoft.CostManagement/exports",
                "apiVersion": EXPORT_API_VERSION,
                "name": "[variables('exportName')]",
                "properties": {
                    "schedule": {
                        "status": "Active",
                        "recurrence": "Daily",
                        "recurrencePeriod": {
                            "from": "[concat(parameters('startDate'), 'T00:00:00Z')]",
                            "to": EXPORT_END_DATE,
                        },
                    },
                    "format": "Csv",
                    "deliveryInfo": {
                        "destination": {
                            "resourceId": "[parameters('storageAccountResourceId')]",
                            "container": "[parameters('storageContainerName')]",
                            "rootFolderPath": "[variables('rootFolderPath')]",
                            "type": "AzureBlob",
                        }
                    },
                    "definition": {
                        "type": variant.value,
                        "timeframe": "MonthToDate",
                        "dataSet": {"granularity": "Daily"},
                    },
                },
            }
        ],
    }

    return {
        "if": {"field": "type", "equals": "Microsoft.Resources/subscriptions"},
        "then": {
            "effect": "[parameters('effect')]",
            "details": {
                "type": "Microsoft.CostManagement/exports",
                "name": EXPORT_NAME_EXPRESSION,
                "deploymentScope": "subscription",
                "existenceScope": "subscription",
                "roleDefinitionIds": [
                    f"/providers/Microsoft.Authorization/roleDefinitions/{CONTRIBUTOR_ROLE_ID}"
                ],
                "existenceCondition": {
                    "allOf": [
                        {
                            "field": "Microsoft.CostManagement/exports/schedule.status",
                            "equals": "Active",
                        },
                        {
                            "field": "Microsoft.CostManagement/exports/deliveryInfo.destination.resourceId",
                            "equals": "[parameters('storageAccountResourceId')]",
                        },
                    ]
                },
                "deployment": {
                    "location": "[parameters('deploymentLocation')]",
                    "properties": {
                        "mode": "Incremental",
                        "parameters": {
                            "storageAccountResourceId": {"value": "[parameters('storageAccountResourceId')]"},
                            "storageContainerName": {"value": "[parameters('storageContainerName')]"},
                            "exportNamePrefix": {"value": "[parameters('exportNamePrefix')]"},
                            "exportFolderPrefix": {"value": "[parameters('exportFolderPrefix')]"},
                            "subscriptionId": {"value": "[subscription().subscriptionId]"},
                        },
                        "template": export_template,
                    },
                },
            },
        },
    }


POLICY_PARAMETERS: dict[str, Any] = {
    "storageAccountResourceId": {"type": "String"},
    "storageContainerName": {"type": "String"},
    "exportNamePrefix": {"type": "String"},
    "exportFolderPrefix": {"type": "String"},
    "deploymentLocation": {"type": "String"},
    "effect": {
        "type": "String",
        "allowedValues": ["DeployIfNotExists", "AuditIfNotExists", "Disabled"],
        "defaultValue": "DeployIfNotExists",
    },
}


def build_automation_template(config: Config, plan: PlanSpec, variant: ExportVariant) -> dict[str, Any]:
    """Subscription-scope template: definition, assignment, grant, remediation."""
    definition_id = (
        f"[subscriptionResourceId('Microsoft.Authorization/policyDefinitions', '{POLICY_DEFINITION_NAME}')]"
    )
    assignment_id = (
        f"[subscriptionResourceId('Microsoft.Authorization/policyAssignments', '{POLICY_ASSIGNMENT_NAME}')]"
    )
    return {
        "$schema": SUBSCRIPTION_TEMPLATE_SCHEMA,
        "contentVersion": "1.0.0.0",
        "resources": [
            {
                "type": "Microsoft.Authorization/policyDefinitions",
                "apiVersion": POLICY_API_VERSION,
                "name": POLICY_DEFINITION_NAME,
                "properties": {
                    "policyType": "Custom",
                    "mode": "All",
                    "displayName": "Deploy Cost Management Export for Subscriptions",
                    "description": "Automatically creates Cost Management exports for subscriptions",
                    "parameters": POLICY_PARAMETERS,
                    "policyRule": escape_arm_expressions(build_policy_rule(variant)),
                },
            },
            {
                "type": "Microsoft.Authorization/policyAssignments",
                "apiVersion": POLICY_API_VERSION,
                "name": POLICY_ASSIGNMENT_NAME,
                "location": config.location,
                "identity": {"type": "SystemAssigned"},
                "dependsOn": [definition_id],
                "properties": {
                    "displayName": "Auto-deploy Cost Exports",
                    "policyDefinitionId": definition_id,
                    "parameters": {
                        "storageAccountResourceId": {"value": config.storage_account_id},
                        "storageContainerName": {"value": plan.storage_container},
                        "exportNamePrefix": {"value": plan.export_name_prefix},
                        "exportFolderPrefix": {"value": plan.export_folder_prefix},
                        "deploymentLocation": {"value": config.location},
                        "effect": {"value": "DeployIfNotExists"},
                    },
                },
            },
            {
                "type": "Microsoft.Authorization/roleAssignments",
                "apiVersion": ROLE_ASSIGNMENT_API_VERSION,
                "name": f"[guid(subscription().id, '{POLICY_ASSIGNMENT_NAME}', '{CONTRIBUTOR_ROLE_ID}')]",
                "dependsOn": [assignment_id],
                "properties": {
                    "roleDefinitionId": (
                        "[subscriptionResourceId('Microsoft.Authorization/roleDefinitions', "
                        f"'{CONTRIBUTOR_ROLE_ID}')]"
                    ),
                    "principalId": (
                        f"[reference({assignment_id}, '{POLICY_API_VERSION}', 'full').identity.principalId]"
                    ),
                    "principalType": "ServicePrincipal",
                },
            },
            {
                "type": "Microsoft.PolicyInsights/remediations",
                "apiVersion": REMEDIATION_API_VERSION,
                "name": REMEDIATION_NAME,
                "dependsOn": [assignment_id],
                "properties": {
                    "policyAssignmentId": assignment_id,
                    "resourceDiscoveryMode": "ReEvaluateCompliance",
                },
            },
        ],
    }


@dataclass
class AutomationResult:
    deployed: bool = False
    skipped_reason: str | None = None
    deployment_name: str | None = None


class AutomationConfigurator:
    """Deploys the auto-export policy on the host subscription."""

    def __init__(self, config: Config, plan: PlanSpec, credential: TokenCredential) -> None:
        self._config = config
        self._plan = plan
        self._client = ResourceManagementClient(
            credential=credential,
            subscription_id=config.host_subscription_id,
        )

    async def configure(self, targets: Iterable[Target]) -> AutomationResult:
        """Deploy the policy when any CSP target is present.

        Raises:
            ProviderError: If the deployment fails.
        """
        if self._config.skip_automation:
            return AutomationResult(skipped_reason="Automation disabled")
        if not any(t.classification == TargetClassification.CSP for t in targets):
            return AutomationResult(skipped_reason="No CSP targets")

        variant = self._plan.variants_for(TargetClassification.CSP)[0]
        deployment_name = f"billing-export-policy-{int(time.time())}"
        if self._config.dry_run:
            logger.info(
                f"Would deploy auto-export policy '{POLICY_DEFINITION_NAME}'",
                extra={"variant": variant.value, "dry_run": True},
            )
            return AutomationResult(skipped_reason="dry-run")

        deployment = Deployment(
            location=self._config.location,
            properties=DeploymentProperties(
                mode=DeploymentMode.INCREMENTAL,
                template=build_automation_template(self._config, self._plan, variant),
                parameters={},
            ),
        )
        try:
            poller = await run_blocking(
                self._client.deployments.begin_create_or_update_at_subscription_scope,
                deployment_name=deployment_name,
                parameters=deployment,
            )
            await asyncio.wait_for(
                run_blocking(poller.result),
                timeout=AUTOMATION_DEPLOYMENT_TIMEOUT_SECONDS,
            )
        except TimeoutError as e:
            raise ProviderError(
                f"Policy deployment timeout after {AUTOMATION_DEPLOYMENT_TIMEOUT_SECONDS}s"
            ) from e
        except HttpResponseError as e:
            error_code = e.error.code if e.error else None
            raise ProviderError(
                f"Policy deployment failed: {e.message}", status_code=e.status_code, code=error_code
            ) from e
        except AzureError as e:
            raise ProviderError(f"Policy deployment failed: {e}") from e

        logger.info(
            "Auto-export policy deployed",
            extra={"deployment_name": deployment_name, "variant": variant.value},
        )
        return AutomationResult(deployed=True, deployment_name=deployment_name)

    # -------------------------------------------------------------------------
    # Removal
    # -------------------------------------------------------------------------

    def _resource_ids(self) -> dict[str, tuple[str, str]]:
        scope = f"/subscriptions/{self._config.host_subscription_id}"
        return {
            "remediation": (
                f"{scope}/providers/Microsoft.PolicyInsights/remediations/{REMEDIATION_NAME}",
                REMEDIATION_API_VERSION,
            ),
            "assignment": (
                f"{scope}/providers/Microsoft.Authorization/policyAssignments/{POLICY_ASSIGNMENT_NAME}",
                POLICY_API_VERSION,
            ),
            "definition": (
                f"{scope}/providers/Microsoft.Authorization/policyDefinitions/{POLICY_DEFINITION_NAME}",
                POLICY_API_VERSION,
            ),
        }

    async def remove(self) -> list[str]:
        """Delete the remediation, the assignment and its identity's grants, then the definition.

        Returns:
            Ids of the resources that were deleted; missing ones are skipped.

        Raises:
            ProviderError: If a delete fails.
        """
        ids = self._resource_ids()
        if self._config.dry_run:
            for resource_id, _ in ids.values():
                logger.info("Would delete automation resource", extra={"resource_id": resource_id, "dry_run": True})
            return []

        removed: list[str] = []
        try:
            principal_id = await self._assignment_principal(*ids["assignment"])
            for key in ("remediation", "assignment"):
                if await self._delete(*ids[key]):
                    removed.append(ids[key][0])
            if principal_id:
                removed.extend(await self._delete_role_assignments(principal_id))
            if await self._delete(*ids["definition"]):
                removed.append(ids["definition"][0])
        except HttpResponseError as e:
            error_code = e.error.code if e.error else None
            raise ProviderError(
                f"Automation removal failed: {e.message}", status_code=e.status_code, code=error_code
            ) from e
        except AzureError as e:
            raise ProviderError(f"Automation removal failed: {e}") from e

        logger.info("Auto-export policy removed", extra={"removed": len(removed)})
        return removed

    async def _assignment_principal(self, resource_id: str, api_version: str) -> str | None:
        try:
            assignment = await run_blocking(
                self._client.resources.get_by_id, resource_id=resource_id, api_version=api_version
            )
        except ResourceNotFoundError:
            return None
        identity = getattr(assignment, "identity", None)
        return getattr(identity, "principal_id", None)

    async def _delete(self, resource_id: str, api_version: str) -> bool:
        try:
            poller = await run_blocking(
                self._client.resources.begin_delete_by_id, resource_id=resource_id, api_version=api_version
            )
            await run_blocking(poller.result)
        except ResourceNotFoundError:
            return False
        logger.info("Deleted automation resource", extra={"resource_id": resource_id})
        return True

    async def _delete_role_assignments(self, principal_id: str) -> list[str]:
        """Grants held by the policy identity outlive the assignment unless removed."""
        request = HttpRequest(
            "GET",
            f"/subscriptions/{self._config.host_subscription_id}/providers/Microsoft.Authorization/roleAssignments",
            params={"api-version": ROLE_ASSIGNMENT_API_VERSION, "$filter": f"principalId eq '{principal_id}'"},
        )
        try:
            body = await run_blocking(send_arm_request, self._client, request) or {}
        except ExportOperatorError as e:
            logger.warning(
                "Failed to list policy identity role assignments",
                extra={"principal_id": principal_id, "error": str(e)},
            )
            return []

        removed: list[str] = []
        for assignment in body.get("value", []):
            assignment_id = assignment.get("id")
            if assignment_id and await self._delete(assignment_id, ROLE_ASSIGNMENT_API_VERSION):
                removed.append(assignment_id)
        return removed
