"""Target enumeration and classification.

Lists every subscription visible to the host credential, classifies it by
quota id (which decides the variant fallback order) and marks targets that
policy excludes. Read-only.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError
from azure.mgmt.subscription import SubscriptionClient

from .errors import EnumerationError
from .models import PlanSpec, Target, TargetClassification

logger = logging.getLogger(__name__)

ENABLED_STATE = "Enabled"


def _state_name(state: object) -> str:
    # The SDK returns either an enum member or a plain string
    return str(getattr(state, "value", state) or "")


class TargetEnumerator:
    """Discovers provisioning targets for a run."""

    def __init__(
        self,
        credential: TokenCredential,
        plan: PlanSpec,
        target_ids: Iterable[str] = (),
    ) -> None:
        self._credential = credential
        self._plan = plan
        self._allowlist = {t.lower() for t in target_ids}

    def list_targets(self) -> list[Target]:
        """List and classify targets, sorted by id.

        Raises:
            EnumerationError: If the listing call cannot be completed.
        """
        try:
            client = SubscriptionClient(self._credential)
            subscriptions = list(client.subscriptions.list())
        except AzureError as e:
            logger.error("Failed to list subscriptions", extra={"error": str(e)})
            raise EnumerationError(f"Failed to list subscriptions: {e}") from e

        targets: list[Target] = []
        seen: set[str] = set()
        for sub in subscriptions:
            sub_id = sub.subscription_id
            if not sub_id or sub_id.lower() in seen:
                continue
            if self._allowlist and sub_id.lower() not in self._allowlist:
                continue
            seen.add(sub_id.lower())

            policies = getattr(sub, "subscription_policies", None)
            quota_id = (getattr(policies, "quota_id", None) or "") if policies else ""
            targets.append(self._classify(sub_id, sub.display_name or "", quota_id, sub.state))

        missing = self._allowlist - seen
        if missing:
            logger.warning(
                "Allowlisted targets are not visible to the host credential",
                extra={"target_ids": sorted(missing)},
            )

        targets.sort(key=lambda t: t.id)

        csp_count = sum(1 for t in targets if t.classification == TargetClassification.CSP)
        logger.info(
            "Enumerated targets",
            extra={
                "total": len(targets),
                "csp": csp_count,
                "standard": len(targets) - csp_count,
                "skipped": sum(1 for t in targets if t.skip_reason),
            },
        )
        return targets

    def _classify(self, sub_id: str, display_name: str, quota_id: str, state: object) -> Target:
        state_name = _state_name(state)
        skip_reason: str | None = None
        if state_name and state_name != ENABLED_STATE:
            skip_reason = f"Subscription state is {state_name}"
        else:
            skip_reason = self._plan.skip_reason_for(quota_id)

        return Target(
            id=sub_id,
            classification=self._plan.classify(quota_id),
            display_name=display_name,
            quota_id=quota_id,
            skip_reason=skip_reason,
        )
