"""Capability probing and permission-propagation waiting.

A role grant is visible in the control plane before it is honored by
every endpoint. The waiter polls the effective permission check until it
reports the capability or the wait budget is spent, so the worker can
choose to proceed or to fail with a propagation reason.
"""

from __future__ import annotations

import logging
import time

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError

from .cloud_api import CloudResourceApi
from .context import RunContext, run_blocking
from .errors import ExportOperatorError
from .models import CapabilityCheckResult, Target
from .retry import BackoffPolicy

logger = logging.getLogger(__name__)


class CapabilityProber:
    """Asks the control plane whether a credential holds a capability."""

    def __init__(self, api: CloudResourceApi) -> None:
        self._api = api

    async def check(
        self, credential: TokenCredential, target: Target, capability: str
    ) -> CapabilityCheckResult:
        """Check one capability. Any read error is reported as not granted."""
        try:
            granted = await run_blocking(self._api.check_capability, credential, target, capability)
        except (AzureError, ExportOperatorError) as e:
            logger.warning(
                "Capability check failed",
                extra={"target_id": target.id, "capability": capability, "error": str(e)},
            )
            return CapabilityCheckResult(granted=False, capability=capability, detail=str(e))
        except Exception as e:
            logger.exception(
                "Unexpected error during capability check",
                extra={"target_id": target.id, "capability": capability, "error": str(e)},
            )
            return CapabilityCheckResult(granted=False, capability=capability, detail=str(e))

        return CapabilityCheckResult(granted=granted, capability=capability)


class PropagationWaiter:
    """Bounded wait for a capability to become effective."""

    def __init__(self, prober: CapabilityProber, ctx: RunContext) -> None:
        self._prober = prober
        self._ctx = ctx

    async def wait_until_granted(
        self,
        credential: TokenCredential,
        target: Target,
        capability: str,
        max_wait: float,
        poll_interval: float,
        policy: BackoffPolicy | None = None,
    ) -> bool:
        """Poll until granted or ``max_wait`` seconds have elapsed.

        The total wait never exceeds ``max_wait`` plus one check. ``policy``
        overrides the fixed ``poll_interval`` schedule.

        Returns:
            True if the capability was observed, False on timeout.

        Raises:
            RunCancelled: If the run is cancelled while waiting.
        """
        policy = policy or BackoffPolicy.fixed(poll_interval)
        deadline = time.monotonic() + max_wait
        checks = 0
        while True:
            checks += 1
            result = await self._prober.check(credential, target, capability)
            if result.granted:
                if checks > 1:
                    logger.info(
                        "Capability became effective",
                        extra={"target_id": target.id, "capability": capability, "checks": checks},
                    )
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Capability not effective before wait expired",
                    extra={
                        "target_id": target.id,
                        "capability": capability,
                        "max_wait_seconds": max_wait,
                        "checks": checks,
                    },
                )
                return False

            await self._ctx.sleep(min(policy.delay(checks), remaining))
