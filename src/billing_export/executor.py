"""Plan executor: the run-level state machine.

Phases run in fixed order, each depending on the previous one at the plan
level:

    Verify -> ProvisionSharedInfra -> ConvergeTargets -> ConfigureAutomation -> Validate

Verify and ProvisionSharedInfra are fatal: every target depends on the
host credential, the target list and the shared storage account. Inside
ConvergeTargets failures are isolated per target. ConfigureAutomation is
reported but never fails the run on its own; Validate fails it only when a
converged export is no longer observed, marking that target for retry.

When a billing scope is configured or discovered, one billing-scope export
is converged first and covers every standard subscription; those targets
fall back to per-subscription exports if it does not converge.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Protocol

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError

from .automation import AutomationConfigurator, AutomationResult
from .cloud_api import CloudResourceApi
from .config import Config
from .context import RunContext, run_blocking
from .credentials import AuthenticationChain, ResolvedCredential
from .enumerator import TargetEnumerator
from .errors import (
    ExportOperatorError,
    NoAuthorizedCredential,
    RunCancelled,
)
from .models import (
    PlanSpec,
    ReconciliationRecord,
    ReconciliationStatus,
    Target,
    TargetClassification,
    utc_now,
)
from .shared_infra import SharedInfraProvisioner, SharedInfraResult
from .state_store import StateStore, StateStoreError
from .worker import ConvergenceWorker

logger = logging.getLogger(__name__)

REASON_CANCELLED = "Cancelled"
REASON_NOT_FOUND = "Export not found during validation"


class Phase(str, Enum):
    VERIFY = "Verify"
    PROVISION_SHARED_INFRA = "ProvisionSharedInfra"
    CONVERGE_TARGETS = "ConvergeTargets"
    CONFIGURE_AUTOMATION = "ConfigureAutomation"
    VALIDATE = "Validate"


FATAL_PHASES = frozenset({Phase.VERIFY, Phase.PROVISION_SHARED_INFRA})


@dataclass
class PhaseResult:
    phase: Phase
    success: bool = True
    error: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def fatal(self) -> bool:
        return not self.success and self.phase in FATAL_PHASES


@dataclass
class RunSummary:
    """End-of-run report: phase results plus one record per target."""

    dry_run: bool = False
    phases: list[PhaseResult] = field(default_factory=list)
    records: dict[str, ReconciliationRecord] = field(default_factory=dict)
    resumed: list[str] = field(default_factory=list)
    cancelled: bool = False
    duration_seconds: float = 0.0

    def count(self, status: ReconciliationStatus) -> int:
        return sum(1 for r in self.records.values() if r.status == status)

    @property
    def counts(self) -> dict[str, int]:
        return {status.value: self.count(status) for status in ReconciliationStatus}

    @property
    def variant_tallies(self) -> dict[str, int]:
        tally = Counter(
            r.variant_used.value
            for r in self.records.values()
            if r.status == ReconciliationStatus.CONVERGED and r.variant_used is not None
        )
        return dict(sorted(tally.items()))

    @property
    def fatal_phase(self) -> PhaseResult | None:
        return next((p for p in self.phases if p.fatal), None)

    @property
    def exit_code(self) -> int:
        if self.fatal_phase is not None:
            return 1
        if any(p.phase == Phase.CONVERGE_TARGETS and not p.success for p in self.phases):
            return 1
        return 1 if self.count(ReconciliationStatus.FAILED) else 0

    def lines(self) -> Iterator[str]:
        """Human-readable summary, one line per entry."""
        for phase in self.phases:
            state = "ok" if phase.success else f"FAILED ({phase.error})"
            yield f"{phase.phase.value}: {state}"
        counts = ", ".join(f"{k}={v}" for k, v in self.counts.items())
        yield f"Targets: {counts}"
        if self.variant_tallies:
            yield "Variants: " + ", ".join(f"{k}={v}" for k, v in self.variant_tallies.items())
        for target_id in sorted(self.records):
            record = self.records[target_id]
            if record.status in (ReconciliationStatus.SKIPPED, ReconciliationStatus.FAILED) or (
                record.status == ReconciliationStatus.PENDING and record.reason
            ):
                yield f"  {target_id} {record.status.value}: {record.reason or ''}".rstrip()

    def log(self) -> None:
        extra: dict[str, Any] = {
            "dry_run": self.dry_run,
            "counts": self.counts,
            "variants": self.variant_tallies,
            "resumed": len(self.resumed),
            "cancelled": self.cancelled,
            "duration_seconds": round(self.duration_seconds, 2),
            "exit_code": self.exit_code,
        }
        failures = {
            r.target_id: r.reason
            for r in self.records.values()
            if r.status in (ReconciliationStatus.FAILED, ReconciliationStatus.SKIPPED)
        }
        if failures:
            extra["reasons"] = failures
        if self.fatal_phase is not None:
            extra["fatal_phase"] = self.fatal_phase.phase.value
            extra["error"] = self.fatal_phase.error
            logger.error("Run aborted", extra=extra)
        elif self.exit_code:
            logger.warning("Run finished with failures", extra=extra)
        else:
            logger.info("Run finished", extra=extra)


class TargetSource(Protocol):
    def list_targets(self) -> list[Target]: ...


class SharedInfra(Protocol):
    async def provider_states(self) -> dict[str, str]: ...

    async def provision(self) -> SharedInfraResult: ...

    async def storage_account_exists(self) -> bool: ...


class Automation(Protocol):
    async def configure(self, targets: list[Target]) -> AutomationResult: ...


class PlanExecutor:
    """Runs one plan end to end and produces a RunSummary.

    Azure-backed collaborators are built from the host credential through
    the factory arguments, which tests replace with mocks.
    """

    def __init__(
        self,
        config: Config,
        plan: PlanSpec,
        api: CloudResourceApi,
        store: StateStore,
        ctx: RunContext | None = None,
        *,
        auth_chain: AuthenticationChain | None = None,
        worker: ConvergenceWorker | None = None,
        enumerator_factory: Callable[[TokenCredential], TargetSource] | None = None,
        shared_infra_factory: Callable[[TokenCredential], SharedInfra] | None = None,
        automation_factory: Callable[[TokenCredential], Automation] | None = None,
    ) -> None:
        self._config = config
        self._plan = plan
        self._api = api
        self._store = store
        self._ctx = ctx or RunContext(config.run_timeout_seconds)
        self._auth_chain = auth_chain or AuthenticationChain.from_config(config, api)
        self._worker = worker or ConvergenceWorker(api, plan, config, self._ctx)
        self._enumerator_factory = enumerator_factory or (
            lambda credential: TargetEnumerator(credential, plan, config.target_ids)
        )
        self._shared_infra_factory = shared_infra_factory or (
            lambda credential: SharedInfraProvisioner(config, plan, credential, self._ctx)
        )
        self._automation_factory = automation_factory or (
            lambda credential: AutomationConfigurator(config, plan, credential)
        )

        self._host: ResolvedCredential | None = None
        self._infra: SharedInfra | None = None
        self._targets: list[Target] = []
        self._billing: Target | None = None
        self._resolved: dict[str, ResolvedCredential] = {}

    @property
    def context(self) -> RunContext:
        return self._ctx

    async def run(self) -> RunSummary:
        summary = RunSummary(dry_run=self._config.dry_run)
        logger.info(
            "Run started",
            extra={
                "dry_run": self._config.dry_run,
                "force": self._config.force,
                "max_workers": self._config.max_workers,
                "target_allowlist": list(self._config.target_ids),
            },
        )
        self._ctx.start_deadline()
        try:
            steps: list[tuple[Phase, Callable[[RunSummary], Any]]] = [
                (Phase.VERIFY, self._verify),
                (Phase.PROVISION_SHARED_INFRA, self._provision_shared_infra),
                (Phase.CONVERGE_TARGETS, self._converge_targets),
                (Phase.CONFIGURE_AUTOMATION, self._configure_automation),
                (Phase.VALIDATE, self._validate),
            ]
            for phase, step in steps:
                if self._ctx.cancelled and phase != Phase.VERIFY:
                    summary.cancelled = True
                    logger.warning(
                        "Skipping phase after cancellation",
                        extra={"phase": phase.value, "reason": self._ctx.reason},
                    )
                    break

                result = await self._run_phase(phase, step, summary)
                summary.phases.append(result)
                if result.fatal:
                    break
        finally:
            self._ctx.stop_deadline()

        summary.cancelled = summary.cancelled or self._ctx.cancelled
        summary.duration_seconds = self._ctx.elapsed()
        summary.log()
        return summary

    async def _run_phase(
        self, phase: Phase, step: Callable[[RunSummary], Any], summary: RunSummary
    ) -> PhaseResult:
        result = PhaseResult(phase=phase)
        start = time.monotonic()
        logger.info("Phase started", extra={"phase": phase.value})
        try:
            result.detail = await step(summary) or {}
        except (ExportOperatorError, AzureError) as e:
            result.success = False
            result.error = str(e)
            log = logger.error if phase in FATAL_PHASES else logger.warning
            log(
                "Phase failed",
                extra={"phase": phase.value, "error_type": type(e).__name__, "error": str(e)},
            )
        except Exception as e:
            result.success = False
            result.error = f"Unexpected error: {e}"
            logger.exception("Unexpected error in phase", extra={"phase": phase.value})
        result.duration_seconds = time.monotonic() - start
        if result.success:
            logger.info(
                "Phase finished",
                extra={"phase": phase.value, "duration_seconds": round(result.duration_seconds, 2)},
            )
        return result

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def _verify(self, summary: RunSummary) -> dict[str, Any]:
        self._host = await self._auth_chain.host_credential()
        credential = self._host.credential

        enumerator = self._enumerator_factory(credential)
        self._targets = await run_blocking(enumerator.list_targets)
        self._billing = await self._resolve_billing_target(credential)
        if self._billing is not None:
            self._targets = [
                replace(t, covered_by=self._billing.id) if self._coverable(t) else t
                for t in self._targets
            ]

        self._infra = self._shared_infra_factory(credential)
        provider_states = await self._infra.provider_states()
        unregistered = sorted(ns for ns, state in provider_states.items() if state != "Registered")
        if unregistered:
            logger.info("Resource providers not yet registered", extra={"namespaces": unregistered})

        return {
            "host_strategy": self._host.strategy.value,
            "targets": len(self._targets),
            "billing_scope": self._billing.id if self._billing else None,
            "unregistered_providers": unregistered,
        }

    @staticmethod
    def _coverable(target: Target) -> bool:
        return target.classification == TargetClassification.STANDARD and not target.skip_reason

    async def _resolve_billing_target(self, credential: TokenCredential) -> Target | None:
        """Pick the billing scope whose single export replaces per-subscription exports."""
        if self._config.force_per_subscription_exports:
            if self._config.billing_scope:
                logger.info("Per-subscription exports forced, ignoring billing scope")
            return None
        if not any(self._coverable(t) for t in self._targets):
            return None

        scope = self._config.billing_scope
        if scope is None and self._config.discover_billing_scope:
            try:
                scope = await run_blocking(self._api.discover_billing_scope, credential)
            except (AzureError, ExportOperatorError) as e:
                logger.warning(
                    "Billing scope discovery failed, using per-subscription exports",
                    extra={"error": str(e)},
                )
                return None
            if scope is None:
                logger.info("No billing scope visible, using per-subscription exports")
                return None

        if scope is None:
            return None
        logger.info("Using billing-scope export", extra={"billing_scope": scope})
        return Target.for_billing_scope(scope)

    async def _provision_shared_infra(self, summary: RunSummary) -> dict[str, Any]:
        assert self._infra is not None
        result = await self._infra.provision()
        return {
            "storage_account_id": result.storage_account_id,
            "providers_registered": result.providers_registered,
            "role_assignment": result.role_assignment,
        }

    async def _converge_targets(self, summary: RunSummary) -> dict[str, Any]:
        try:
            history = await run_blocking(self._store.load)
        except StateStoreError as e:
            logger.warning("State store unreadable, treating history as empty", extra={"error": str(e)})
            history = {}

        attempted = 0
        if self._billing is not None:
            billing_record = await self._converge_billing(summary, history.get(self._billing.id))
            attempted += 0 if self._billing.id in summary.resumed else 1
            covered = billing_record.status == ReconciliationStatus.CONVERGED or (
                self._config.dry_run and billing_record.status == ReconciliationStatus.PENDING
            )
            if not covered:
                logger.warning(
                    "Billing-scope export not converged, falling back to per-subscription exports",
                    extra={"billing_scope": self._billing.id, "reason": billing_record.reason},
                )
        else:
            covered = False

        pending: list[Target] = []
        for target in self._targets:
            previous = history.get(target.id)
            if previous is not None and previous.status == ReconciliationStatus.CONVERGED:
                summary.records[target.id] = previous
                summary.resumed.append(target.id)
                continue
            reason = target.skip_reason
            if reason is None and covered and target.covered_by:
                prefix = "dry-run: would be covered" if self._config.dry_run else "Covered"
                reason = f"{prefix} by billing-scope export {self._plan.billing_export_name}"
            if reason:
                record = ReconciliationRecord(
                    target_id=target.id,
                    resource_name=self._plan.resource_name(target.id),
                    status=ReconciliationStatus.SKIPPED,
                    last_attempt_at=utc_now(),
                    reason=reason,
                )
                logger.info("Skipping target", extra={"target_id": target.id, "reason": reason})
                summary.records[target.id] = record
                await self._persist(record)
                continue
            pending.append(target)

        logger.info(
            "Converging targets",
            extra={
                "pending": len(pending),
                "resumed": len(summary.resumed),
                "max_workers": self._config.max_workers,
            },
        )

        semaphore = asyncio.Semaphore(self._config.max_workers)

        async def process(target: Target) -> ReconciliationRecord:
            async with semaphore:
                return await self._converge_one(target)

        for record in await asyncio.gather(*(process(t) for t in pending)):
            summary.records[record.target_id] = record

        return {"attempted": attempted + len(pending), "resumed": len(summary.resumed)}

    async def _converge_billing(
        self, summary: RunSummary, previous: ReconciliationRecord | None
    ) -> ReconciliationRecord:
        assert self._billing is not None
        if previous is not None and previous.status == ReconciliationStatus.CONVERGED:
            summary.resumed.append(self._billing.id)
            record = previous
        else:
            record = await self._converge_one(self._billing)
        summary.records[self._billing.id] = record
        return record

    async def _converge_one(self, target: Target) -> ReconciliationRecord:
        strategy: str | None = None
        try:
            self._ctx.raise_if_cancelled()
            resolved = await self._auth_chain.authenticate(target)
            strategy = resolved.strategy.value
            self._resolved[target.id] = resolved
            record = await self._worker.converge(target, resolved)
        except NoAuthorizedCredential as e:
            logger.error("No credential authorized target", extra={"target_id": target.id, "attempts": e.attempts})
            record = self._failure(target, str(e), strategy)
        except RunCancelled:
            record = self._failure(target, REASON_CANCELLED, strategy)
        except Exception as e:
            logger.exception("Unexpected error converging target", extra={"target_id": target.id})
            record = self._failure(target, f"Unexpected error: {e}", strategy)

        await self._persist(record)
        return record

    def _failure(self, target: Target, reason: str, strategy: str | None) -> ReconciliationRecord:
        return ReconciliationRecord(
            target_id=target.id,
            resource_name=self._plan.resource_name(target.id),
            status=ReconciliationStatus.FAILED,
            last_attempt_at=utc_now(),
            reason=reason,
            credential_strategy=strategy,
        )

    async def _persist(self, record: ReconciliationRecord) -> None:
        if self._config.dry_run or not record.status.is_terminal:
            return
        try:
            await run_blocking(self._store.upsert, record)
        except (StateStoreError, OSError) as e:
            # The resource state is unaffected; the next confirmation check rediscovers it
            logger.warning(
                "Failed to persist reconciliation record",
                extra={"target_id": record.target_id, "status": record.status.value, "error": str(e)},
            )

    async def _configure_automation(self, summary: RunSummary) -> dict[str, Any]:
        assert self._host is not None
        eligible = [t for t in self._targets if not t.skip_reason]
        result = await self._automation_factory(self._host.credential).configure(eligible)
        return {"deployed": result.deployed, "skipped_reason": result.skipped_reason}

    async def _validate(self, summary: RunSummary) -> dict[str, Any]:
        converged = summary.count(ReconciliationStatus.CONVERGED)
        if self._config.dry_run:
            logger.info("Validation skipped (dry run mode)", extra={"dry_run": True})
            return {"converged": converged}

        assert self._infra is not None
        exists = await self._infra.storage_account_exists()
        if exists:
            logger.info("Storage account validated", extra={"storage_account_id": self._config.storage_account_id})
        else:
            logger.error("Storage account validation failed", extra={"storage_account_id": self._config.storage_account_id})

        observed, missing, unverified = await self._observe_exports(summary)
        if missing:
            logger.error("Converged exports not found", extra={"target_ids": missing})
        if converged == 0:
            logger.warning("No exports are converged")
        return {
            "storage_account_exists": exists,
            "converged": converged,
            "observed": observed,
            "missing": len(missing),
            "unverified": unverified,
        }

    async def _observe_exports(self, summary: RunSummary) -> tuple[int, list[str], int]:
        """Describe every converged export; missing ones are marked Failed for the next run."""
        targets = {t.id: t for t in self._targets}
        if self._billing is not None:
            targets[self._billing.id] = self._billing

        observed = 0
        unverified = 0
        missing: list[str] = []
        for target_id, record in sorted(summary.records.items()):
            target = targets.get(target_id)
            if record.status != ReconciliationStatus.CONVERGED or target is None:
                continue
            try:
                resolved = self._resolved.get(target_id) or await self._auth_chain.authenticate(target)
                state = await run_blocking(self._api.describe, resolved.credential, target)
            except (AzureError, ExportOperatorError) as e:
                unverified += 1
                logger.warning("Export could not be validated", extra={"target_id": target_id, "error": str(e)})
                continue

            if state.exists:
                observed += 1
                continue
            missing.append(target_id)
            failed = record.model_copy(
                update={
                    "status": ReconciliationStatus.FAILED,
                    "reason": REASON_NOT_FOUND,
                    "last_attempt_at": utc_now(),
                }
            )
            summary.records[target_id] = failed
            await self._persist(failed)
        return observed, missing, unverified
