"""Per-target resource convergence.

Algorithm for one target:
1. Confirmation check: describe the resource by its deterministic name. If
   it exists with the desired configuration the target is converged and
   nothing is mutated.
2. Make sure the export resource providers are registered on the target
   subscription (bounded wait after a registration request).
3. Wait (bounded) for the create capability to become effective.
4. Try each variant for the target's classification in fixed priority
   order. Unsupported variants fall through to the next one; transient
   authorization errors are retried on the same variant first.
5. Asynchronous creates are polled to a terminal status. Only Succeeded
   continues; TimedOut stops the target without re-creating anything.
6. Re-describe after a successful create and report Converged only once
   the resource is observed.
"""

from __future__ import annotations

import logging
import time

from azure.core.exceptions import AzureError

from .capability import CapabilityProber, PropagationWaiter
from .cloud_api import PROVIDER_REGISTERED, CloudResourceApi, classify_failure
from .config import Config
from .context import RunContext, run_blocking
from .credentials import ResolvedCredential
from .errors import (
    ExportOperatorError,
    OperationTimeout,
    PermanentAuthorizationDenied,
    PermissionPropagationPending,
    ProviderError,
    TransientAuthorizationError,
    VariantUnsupported,
)
from .lro import OperationPoller
from .models import (
    CreateOutcome,
    ExportVariant,
    OperationStatus,
    PlanSpec,
    ReconciliationRecord,
    ReconciliationStatus,
    ResourceState,
    Target,
    utc_now,
)
from .retry import BackoffPolicy

logger = logging.getLogger(__name__)

REASON_TIMED_OUT = "TimedOut"
REASON_PROPAGATION_PENDING = "PermissionPropagationPending"
REASON_NOT_OBSERVED = "Created but not observed by describe"

# Re-describe schedule after a successful create
DEFAULT_CONFIRM_POLICY = BackoffPolicy(max_attempts=4, interval=2.0, multiplier=2.0, max_interval=10.0)


class ConvergenceWorker:
    """Brings one target's export to the desired configuration."""

    def __init__(
        self,
        api: CloudResourceApi,
        plan: PlanSpec,
        config: Config,
        ctx: RunContext,
        *,
        auth_retry: BackoffPolicy | None = None,
        confirm_retry: BackoffPolicy | None = None,
    ) -> None:
        self._api = api
        self._plan = plan
        self._config = config
        self._ctx = ctx
        self._auth_retry = auth_retry or BackoffPolicy()
        self._confirm_retry = confirm_retry or DEFAULT_CONFIRM_POLICY
        self._waiter = PropagationWaiter(CapabilityProber(api), ctx)
        self._poller = OperationPoller(api, ctx)

    def _record(
        self,
        target: Target,
        resolved: ResolvedCredential,
        status: ReconciliationStatus,
        variant: ExportVariant | None = None,
        reason: str | None = None,
    ) -> ReconciliationRecord:
        return ReconciliationRecord(
            target_id=target.id,
            resource_name=self._plan.resource_name(target.id),
            status=status,
            variant_used=variant,
            last_attempt_at=utc_now(),
            reason=reason,
            credential_strategy=resolved.strategy.value,
        )

    async def converge(self, target: Target, resolved: ResolvedCredential) -> ReconciliationRecord:
        """Converge one target.

        Returns:
            A terminal record, or a Pending record in dry-run mode.

        Raises:
            RunCancelled: If the run is cancelled mid-convergence.
        """
        try:
            return await self._converge(target, resolved)
        except PermissionPropagationPending as e:
            logger.warning(
                "Capability not effective, target not attempted",
                extra={"target_id": target.id, "capability": e.capability, "waited_seconds": e.waited_seconds},
            )
            return self._record(
                target, resolved, ReconciliationStatus.FAILED, reason=REASON_PROPAGATION_PENDING
            )
        except OperationTimeout as e:
            # Unknown remote outcome: the next run's confirmation check decides
            logger.warning(
                "Export operation timed out",
                extra={"target_id": target.id, "operation_id": e.operation_id, "timeout_seconds": e.timeout_seconds},
            )
            variant = ExportVariant(e.variant) if e.variant else None
            return self._record(
                target, resolved, ReconciliationStatus.FAILED, variant=variant, reason=REASON_TIMED_OUT
            )

    async def _converge(self, target: Target, resolved: ResolvedCredential) -> ReconciliationRecord:
        credential = resolved.credential
        variants = self._plan.variants_for(target.classification)
        destination = self._config.storage_account_id

        try:
            state = await run_blocking(self._api.describe, credential, target)
        except (AzureError, ExportOperatorError) as e:
            logger.error("Confirmation check failed", extra={"target_id": target.id, "error": str(e)})
            return self._record(target, resolved, ReconciliationStatus.FAILED, reason=str(e))

        if state.matches(destination, variants):
            logger.info(
                "Export already converged",
                extra={"target_id": target.id, "variant": state.variant.value if state.variant else None},
            )
            return self._record(target, resolved, ReconciliationStatus.CONVERGED, variant=state.variant)

        if state.exists:
            # A create is an upsert, so drift is repaired the same way
            logger.info(
                "Export exists with different configuration",
                extra={
                    "target_id": target.id,
                    "observed_variant": state.variant.value if state.variant else None,
                    "observed_destination": state.destination_id,
                },
            )

        if not target.is_billing_scope:
            await self._ensure_providers(resolved, target)

        granted = await self._waiter.wait_until_granted(
            credential,
            target,
            self._plan.capability,
            max_wait=self._config.propagation_max_wait_seconds,
            poll_interval=self._config.propagation_poll_interval_seconds,
        )
        if not granted and not self._config.proceed_on_propagation_timeout:
            raise PermissionPropagationPending(
                target.id, self._plan.capability, self._config.propagation_max_wait_seconds
            )

        if self._config.dry_run:
            reason = f"dry-run: would create {variants[0].value} export {self._plan.resource_name(target.id)}"
            logger.info(reason, extra={"target_id": target.id, "dry_run": True, "capability_granted": granted})
            return self._record(target, resolved, ReconciliationStatus.PENDING, reason=reason)

        last_error: str | None = None
        for variant in variants:
            self._ctx.raise_if_cancelled()
            try:
                outcome = await self._create_with_retry(resolved, target, variant)
            except VariantUnsupported as e:
                logger.info(
                    "Variant unsupported, trying next",
                    extra={"target_id": target.id, "variant": variant.value, "error": str(e)},
                )
                last_error = str(e)
                continue
            except TransientAuthorizationError as e:
                if e.capability:
                    logger.warning(
                        "Variant not permitted after retries, trying next",
                        extra={"target_id": target.id, "variant": variant.value, "error": str(e)},
                    )
                    last_error = str(e)
                    continue
                return self._failed(target, resolved, variant, e)
            except (PermanentAuthorizationDenied, ProviderError) as e:
                return self._failed(target, resolved, variant, e)
            except AzureError as e:
                return self._failed(target, resolved, variant, e)

            if outcome.is_async:
                assert outcome.handle is not None
                final = await self._poller.poll(
                    credential,
                    outcome.handle,
                    timeout=self._config.operation_timeout_seconds,
                    interval=self._config.operation_poll_interval_seconds,
                )
                if final.status == OperationStatus.TIMED_OUT:
                    raise OperationTimeout(
                        final.id, self._config.operation_timeout_seconds, variant=variant.value
                    )
                if final.status != OperationStatus.SUCCEEDED:
                    error = classify_failure(final.error or f"Operation {final.status.value}")
                    if isinstance(error, VariantUnsupported):
                        logger.info(
                            "Variant rejected by provider operation, trying next",
                            extra={"target_id": target.id, "variant": variant.value, "error": str(error)},
                        )
                        last_error = str(error)
                        continue
                    return self._failed(target, resolved, variant, error)

            if await self._confirm(resolved, target, variant):
                logger.info("Export converged", extra={"target_id": target.id, "variant": variant.value})
                return self._record(target, resolved, ReconciliationStatus.CONVERGED, variant=variant)
            return self._record(
                target, resolved, ReconciliationStatus.FAILED, variant=variant, reason=REASON_NOT_OBSERVED
            )

        reason = f"All variants exhausted: {last_error}" if last_error else "All variants exhausted"
        logger.error(reason, extra={"target_id": target.id})
        return self._record(target, resolved, ReconciliationStatus.FAILED, reason=reason)

    async def _ensure_providers(self, resolved: ResolvedCredential, target: Target) -> None:
        """Register missing export providers on the target subscription.

        Registration problems are logged and never fail the target here; an
        unregistered provider surfaces as a classified create error instead.
        """
        credential = resolved.credential
        for namespace in self._plan.target_providers:
            try:
                state = await run_blocking(self._api.provider_state, credential, target, namespace)
            except (AzureError, ExportOperatorError) as e:
                logger.warning(
                    "Failed to read provider registration",
                    extra={"target_id": target.id, "namespace": namespace, "error": str(e)},
                )
                continue
            if state == PROVIDER_REGISTERED:
                continue

            if self._config.dry_run:
                logger.info(
                    f"Would register provider {namespace}",
                    extra={"target_id": target.id, "namespace": namespace, "state": state, "dry_run": True},
                )
                continue

            logger.info(
                "Registering provider on target",
                extra={"target_id": target.id, "namespace": namespace, "state": state},
            )
            try:
                await run_blocking(self._api.register_provider, credential, target, namespace)
                await self._wait_for_registration(credential, target, namespace)
            except (AzureError, ExportOperatorError) as e:
                logger.warning(
                    "Provider registration failed",
                    extra={"target_id": target.id, "namespace": namespace, "error": str(e)},
                )

    async def _wait_for_registration(self, credential: object, target: Target, namespace: str) -> None:
        max_wait = self._config.provider_registration_max_wait_seconds
        deadline = time.monotonic() + max_wait
        while True:
            state = await run_blocking(self._api.provider_state, credential, target, namespace)
            if state == PROVIDER_REGISTERED:
                logger.info("Provider registered", extra={"target_id": target.id, "namespace": namespace})
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                # Registration continues server-side
                logger.warning(
                    "Provider registration still in progress",
                    extra={"target_id": target.id, "namespace": namespace, "max_wait_seconds": max_wait},
                )
                return
            await self._ctx.sleep(min(self._config.propagation_poll_interval_seconds, remaining))

    def _failed(
        self,
        target: Target,
        resolved: ResolvedCredential,
        variant: ExportVariant,
        error: Exception,
    ) -> ReconciliationRecord:
        logger.error(
            "Export creation failed",
            extra={
                "target_id": target.id,
                "variant": variant.value,
                "error_type": type(error).__name__,
                "error": str(error),
            },
        )
        return self._record(target, resolved, ReconciliationStatus.FAILED, variant=variant, reason=str(error))

    async def _create_with_retry(
        self, resolved: ResolvedCredential, target: Target, variant: ExportVariant
    ) -> CreateOutcome:
        """Create one variant, retrying transient authorization errors.

        Raises:
            TransientAuthorizationError: If retries are exhausted.
        """
        policy = self._auth_retry
        for attempt in range(1, policy.max_attempts + 1):
            try:
                return await run_blocking(self._api.create, resolved.credential, target, variant)
            except TransientAuthorizationError as e:
                if attempt >= policy.max_attempts:
                    raise
                wait_time = policy.delay(attempt)
                logger.warning(
                    "Transient authorization error, retrying",
                    extra={
                        "target_id": target.id,
                        "variant": variant.value,
                        "attempt": attempt,
                        "max_attempts": policy.max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await self._ctx.sleep(wait_time)

        # max_attempts >= 1, so the loop either returned or raised
        raise AssertionError("Retry loop completed without a result")

    async def _confirm(self, resolved: ResolvedCredential, target: Target, variant: ExportVariant) -> bool:
        destination = self._config.storage_account_id
        policy = self._confirm_retry
        for attempt in range(1, policy.max_attempts + 1):
            try:
                state: ResourceState = await run_blocking(self._api.describe, resolved.credential, target)
            except (AzureError, ExportOperatorError) as e:
                logger.warning(
                    "Confirmation read failed",
                    extra={"target_id": target.id, "attempt": attempt, "error": str(e)},
                )
            else:
                if state.matches(destination, [variant]):
                    return True

            if attempt < policy.max_attempts:
                await self._ctx.sleep(policy.delay(attempt))

        logger.warning(
            "Created export not observed",
            extra={"target_id": target.id, "variant": variant.value, "attempts": policy.max_attempts},
        )
        return False
