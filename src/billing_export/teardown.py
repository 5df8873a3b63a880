"""Removal of what the engine converged.

Order:
1. Delete each target's export with the credential that authorizes it,
   including the billing-scope export
2. Remove the auto-export policy from the host subscription
3. Optionally delete the resource group holding the storage account
4. Drop the state records of targets whose export is gone

Exports are deleted per target like convergence: one target failing never
stops the others. In dry-run mode every step only logs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError

from .automation import AutomationConfigurator
from .cloud_api import CloudResourceApi
from .config import Config
from .context import RunContext, run_blocking
from .credentials import AuthenticationChain
from .enumerator import TargetEnumerator
from .errors import ExportOperatorError
from .executor import TargetSource
from .models import PlanSpec, Target, is_billing_scope
from .shared_infra import SharedInfraProvisioner
from .state_store import JsonLinesStateStore, StateStoreError

logger = logging.getLogger(__name__)


class AutomationRemoval(Protocol):
    async def remove(self) -> list[str]: ...


class ResourceGroupRemoval(Protocol):
    async def delete_resource_group(self) -> bool: ...


@dataclass
class TeardownSummary:
    dry_run: bool = False
    deleted: list[str] = field(default_factory=list)
    absent: list[str] = field(default_factory=list)
    would_delete: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    automation_removed: list[str] = field(default_factory=list)
    resource_group_deleted: bool = False
    records_removed: int = 0

    @property
    def exit_code(self) -> int:
        return 1 if self.failures else 0

    def lines(self) -> Iterator[str]:
        if self.dry_run:
            yield f"Exports that would be deleted: {len(self.would_delete)}"
        else:
            yield f"Exports deleted: {len(self.deleted)}, already absent: {len(self.absent)}"
            yield f"Automation resources removed: {len(self.automation_removed)}"
            yield f"Resource group deleted: {'yes' if self.resource_group_deleted else 'no'}"
            yield f"State records removed: {self.records_removed}"
        for key in sorted(self.failures):
            yield f"  {key} Failed: {self.failures[key]}"

    def log(self) -> None:
        extra: dict[str, Any] = {
            "dry_run": self.dry_run,
            "deleted": len(self.deleted),
            "absent": len(self.absent),
            "would_delete": len(self.would_delete),
            "automation_removed": len(self.automation_removed),
            "resource_group_deleted": self.resource_group_deleted,
            "records_removed": self.records_removed,
        }
        if self.failures:
            extra["failures"] = self.failures
            logger.warning("Teardown finished with failures", extra=extra)
        else:
            logger.info("Teardown finished", extra=extra)


class Teardown:
    """Deletes exports, automation and optionally the shared storage."""

    def __init__(
        self,
        config: Config,
        plan: PlanSpec,
        api: CloudResourceApi,
        store: JsonLinesStateStore,
        ctx: RunContext | None = None,
        *,
        delete_storage: bool = False,
        auth_chain: AuthenticationChain | None = None,
        enumerator_factory: Callable[[TokenCredential], TargetSource] | None = None,
        automation_factory: Callable[[TokenCredential], AutomationRemoval] | None = None,
        resource_group_factory: Callable[[TokenCredential], ResourceGroupRemoval] | None = None,
    ) -> None:
        self._config = config
        self._plan = plan
        self._api = api
        self._store = store
        self._ctx = ctx or RunContext(config.run_timeout_seconds)
        self._delete_storage = delete_storage
        self._auth_chain = auth_chain or AuthenticationChain.from_config(config, api)
        self._enumerator_factory = enumerator_factory or (
            lambda credential: TargetEnumerator(credential, plan, config.target_ids)
        )
        self._automation_factory = automation_factory or (
            lambda credential: AutomationConfigurator(config, plan, credential)
        )
        self._resource_group_factory = resource_group_factory or (
            lambda credential: SharedInfraProvisioner(config, plan, credential, self._ctx)
        )

    async def run(self) -> TeardownSummary:
        """Tear everything down once.

        Raises:
            NoAuthorizedCredential: If no credential authorizes the host.
            EnumerationError: If targets cannot be listed.
        """
        summary = TeardownSummary(dry_run=self._config.dry_run)
        logger.info(
            "Teardown started",
            extra={
                "dry_run": self._config.dry_run,
                "delete_storage": self._delete_storage,
                "target_allowlist": list(self._config.target_ids),
            },
        )
        host = await self._auth_chain.host_credential()
        targets = await self._targets(host.credential)

        semaphore = asyncio.Semaphore(self._config.max_workers)

        async def process(target: Target) -> None:
            async with semaphore:
                await self._remove_export(target, summary)

        await asyncio.gather(*(process(t) for t in targets))

        try:
            summary.automation_removed = await self._automation_factory(host.credential).remove()
        except (ExportOperatorError, AzureError) as e:
            logger.warning("Automation removal failed", extra={"error": str(e)})
            summary.failures["automation"] = str(e)

        if self._delete_storage:
            try:
                summary.resource_group_deleted = await self._resource_group_factory(
                    host.credential
                ).delete_resource_group()
            except (ExportOperatorError, AzureError) as e:
                logger.warning("Resource group deletion failed", extra={"error": str(e)})
                summary.failures["resource_group"] = str(e)

        if not self._config.dry_run:
            gone = set(summary.deleted) | set(summary.absent)
            try:
                summary.records_removed = await run_blocking(self._store.remove, gone)
            except StateStoreError as e:
                logger.warning("Failed to remove state records", extra={"error": str(e)})
                summary.failures["state"] = str(e)

        summary.log()
        return summary

    async def _targets(self, credential: TokenCredential) -> list[Target]:
        enumerator = self._enumerator_factory(credential)
        targets = [t for t in await run_blocking(enumerator.list_targets) if not t.skip_reason]

        billing_scopes: set[str] = set()
        if self._config.billing_scope:
            billing_scopes.add(self._config.billing_scope.rstrip("/"))
        try:
            history = await run_blocking(self._store.load)
        except StateStoreError as e:
            logger.warning("State store unreadable", extra={"error": str(e)})
            history = {}
        billing_scopes.update(target_id for target_id in history if is_billing_scope(target_id))

        return [Target.for_billing_scope(scope) for scope in sorted(billing_scopes)] + targets

    async def _remove_export(self, target: Target, summary: TeardownSummary) -> None:
        name = self._plan.resource_name(target.id)
        try:
            self._ctx.raise_if_cancelled()
            resolved = await self._auth_chain.authenticate(target)
            if self._config.dry_run:
                state = await run_blocking(self._api.describe, resolved.credential, target)
                if state.exists:
                    logger.info(
                        f"Would delete export {name}",
                        extra={"target_id": target.id, "dry_run": True},
                    )
                    summary.would_delete.append(target.id)
                return

            if await run_blocking(self._api.delete, resolved.credential, target):
                logger.info("Deleted export", extra={"target_id": target.id, "export_name": name})
                summary.deleted.append(target.id)
            else:
                summary.absent.append(target.id)
        except (ExportOperatorError, AzureError) as e:
            logger.error("Failed to delete export", extra={"target_id": target.id, "error": str(e)})
            summary.failures[target.id] = str(e)
        except Exception as e:
            logger.exception("Unexpected error deleting export", extra={"target_id": target.id})
            summary.failures[target.id] = f"Unexpected error: {e}"
