"""Long-running operation poller."""

from __future__ import annotations

import logging
import time

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError

from .cloud_api import CloudResourceApi
from .context import RunContext, run_blocking
from .models import OperationHandle, OperationStatus
from .retry import BackoffPolicy

logger = logging.getLogger(__name__)


class OperationPoller:
    """Polls an operation handle until it reaches a terminal status.

    A poll that outlives its timeout returns TIMED_OUT, which is distinct
    from FAILED: the remote operation may still complete later.
    """

    def __init__(self, api: CloudResourceApi, ctx: RunContext) -> None:
        self._api = api
        self._ctx = ctx

    async def poll(
        self,
        credential: TokenCredential,
        handle: OperationHandle,
        timeout: float,
        interval: float,
    ) -> OperationHandle:
        policy = BackoffPolicy.fixed(interval)
        deadline = time.monotonic() + timeout
        current = handle
        reads = 0
        while True:
            reads += 1
            try:
                current = await run_blocking(self._api.poll_operation, credential, current)
            except AzureError as e:
                # Status reads are idempotent; keep polling until the deadline
                logger.warning(
                    "Operation status read failed",
                    extra={"operation_id": handle.id, "target_id": handle.target_id, "error": str(e)},
                )

            if current.is_terminal:
                logger.info(
                    "Operation finished",
                    extra={
                        "operation_id": current.id,
                        "target_id": current.target_id,
                        "status": current.status.value,
                    },
                )
                return current

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Operation poll timed out",
                    extra={
                        "operation_id": current.id,
                        "target_id": current.target_id,
                        "timeout_seconds": timeout,
                        "last_status": current.status.value,
                    },
                )
                current.status = OperationStatus.TIMED_OUT
                return current

            await self._ctx.sleep(min(policy.delay(reads), remaining))
