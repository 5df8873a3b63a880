"""Tests for tearing down exports, automation and shared storage."""

from __future__ import annotations

from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
from azure_mock import MockCloudApi, MockStrategy

from billing_export.config import AuthStrategyName, Config
from billing_export.credentials import AuthenticationChain
from billing_export.errors import NoAuthorizedCredential, ProviderError
from billing_export.models import (
    ExportVariant,
    PlanSpec,
    ReconciliationRecord,
    ReconciliationStatus,
    Target,
)
from billing_export.state_store import JsonLinesStateStore
from billing_export.teardown import Teardown, TeardownSummary

SUB_A = "aaaaaaaa-0000-0000-0000-00000000000a"
SUB_B = "bbbbbbbb-0000-0000-0000-00000000000b"
SUB_C = "cccccccc-0000-0000-0000-00000000000c"
BILLING_SCOPE = "/providers/Microsoft.Billing/billingAccounts/1234:5678/billingProfiles/AB12-CD34"


def _converged(target_id: str) -> ReconciliationRecord:
    return ReconciliationRecord(
        target_id=target_id,
        resource_name="r",
        status=ReconciliationStatus.CONVERGED,
        variant_used=ExportVariant.ACTUAL_COST,
    )


TeardownFactory = Callable[..., tuple[Teardown, MagicMock, MagicMock]]


@pytest.fixture
def store(config: Config) -> JsonLinesStateStore:
    return JsonLinesStateStore(config.state_file)


@pytest.fixture
def make_teardown(
    cloud_api: MockCloudApi, store: JsonLinesStateStore, make_config: Callable[..., Config]
) -> TeardownFactory:
    def factory(
        targets: list[Target], delete_storage: bool = False, **overrides: object
    ) -> tuple[Teardown, MagicMock, MagicMock]:
        config = make_config(**overrides)
        enumerator = MagicMock()
        enumerator.list_targets.return_value = targets
        automation = MagicMock()
        automation.remove = AsyncMock(return_value=["/subscriptions/h/policyAssignments/a"])
        infra = MagicMock()
        infra.delete_resource_group = AsyncMock(return_value=True)
        strategies = [MockStrategy(AuthStrategyName.AMBIENT), MockStrategy(AuthStrategyName.SERVICE_PRINCIPAL)]
        teardown = Teardown(
            config,
            PlanSpec(),
            cloud_api,
            store,
            delete_storage=delete_storage,
            auth_chain=AuthenticationChain(cloud_api, strategies, config.host_subscription_id),
            enumerator_factory=lambda credential: enumerator,
            automation_factory=lambda credential: automation,
            resource_group_factory=lambda credential: infra,
        )
        return teardown, automation, infra

    return factory


class TestTeardown:
    @pytest.mark.asyncio
    async def test_deletes_exports_and_state(
        self, cloud_api: MockCloudApi, store: JsonLinesStateStore, make_teardown: TeardownFactory
    ) -> None:
        cloud_api.seed_export(SUB_A, ExportVariant.ACTUAL_COST)
        store.upsert(_converged(SUB_A))
        store.upsert(_converged(SUB_C))
        teardown, automation, infra = make_teardown([Target(id=SUB_A), Target(id=SUB_B)])

        summary = await teardown.run()

        assert summary.deleted == [SUB_A]
        assert summary.absent == [SUB_B]
        assert SUB_A not in cloud_api.exports
        assert summary.automation_removed == ["/subscriptions/h/policyAssignments/a"]
        automation.remove.assert_awaited_once()
        infra.delete_resource_group.assert_not_awaited()
        # Records of targets outside this teardown stay
        assert set(store.load()) == {SUB_C}
        assert summary.records_removed == 1
        assert summary.exit_code == 0

    @pytest.mark.asyncio
    async def test_deletes_each_export_with_its_own_credential(
        self, cloud_api: MockCloudApi, make_teardown: TeardownFactory
    ) -> None:
        cloud_api.seed_export(SUB_B, ExportVariant.USAGE)
        cloud_api.deny(SUB_B, "ambient")
        teardown, _, _ = make_teardown([Target(id=SUB_B)])

        await teardown.run()

        assert [c.credential for c in cloud_api.calls if c.method == "delete"] == ["service_principal"]

    @pytest.mark.asyncio
    async def test_billing_export_from_state_is_deleted(
        self, cloud_api: MockCloudApi, store: JsonLinesStateStore, make_teardown: TeardownFactory
    ) -> None:
        cloud_api.seed_export(BILLING_SCOPE, ExportVariant.ACTUAL_COST)
        store.upsert(_converged(BILLING_SCOPE))
        teardown, _, _ = make_teardown([Target(id=SUB_A)])

        summary = await teardown.run()

        assert summary.deleted == [BILLING_SCOPE]
        assert store.load() == {}

    @pytest.mark.asyncio
    async def test_skipped_targets_are_left_alone(
        self, cloud_api: MockCloudApi, make_teardown: TeardownFactory
    ) -> None:
        teardown, _, _ = make_teardown([Target(id=SUB_A, skip_reason="Free trial subscription")])

        await teardown.run()

        assert cloud_api.count("delete") == 0

    @pytest.mark.asyncio
    async def test_target_failure_is_isolated(
        self, cloud_api: MockCloudApi, store: JsonLinesStateStore, make_teardown: TeardownFactory
    ) -> None:
        cloud_api.seed_export(SUB_A, ExportVariant.ACTUAL_COST)
        store.upsert(_converged(SUB_B))
        cloud_api.deny(SUB_B, "ambient")
        cloud_api.deny(SUB_B, "service_principal")
        teardown, _, _ = make_teardown([Target(id=SUB_A), Target(id=SUB_B)])

        summary = await teardown.run()

        assert summary.deleted == [SUB_A]
        assert "No credential authorized" in summary.failures[SUB_B]
        assert set(store.load()) == {SUB_B}
        assert summary.exit_code == 1

    @pytest.mark.asyncio
    async def test_automation_failure_is_reported(self, make_teardown: TeardownFactory) -> None:
        teardown, automation, _ = make_teardown([])
        automation.remove.side_effect = ProviderError("Automation removal failed: denied")

        summary = await teardown.run()

        assert summary.failures == {"automation": "Automation removal failed: denied"}
        assert summary.exit_code == 1

    @pytest.mark.asyncio
    async def test_delete_storage(self, make_teardown: TeardownFactory) -> None:
        teardown, _, infra = make_teardown([], delete_storage=True)

        summary = await teardown.run()

        infra.delete_resource_group.assert_awaited_once()
        assert summary.resource_group_deleted

    @pytest.mark.asyncio
    async def test_dry_run_deletes_nothing(
        self, cloud_api: MockCloudApi, store: JsonLinesStateStore, make_teardown: TeardownFactory
    ) -> None:
        cloud_api.seed_export(SUB_A, ExportVariant.ACTUAL_COST)
        store.upsert(_converged(SUB_A))
        teardown, _, _ = make_teardown([Target(id=SUB_A), Target(id=SUB_B)], dry_run=True)

        summary = await teardown.run()

        assert summary.would_delete == [SUB_A]
        assert cloud_api.count("delete") == 0
        assert SUB_A in cloud_api.exports
        assert set(store.load()) == {SUB_A}
        assert "Exports that would be deleted: 1" in list(summary.lines())

    @pytest.mark.asyncio
    async def test_unauthorized_host_raises(
        self, cloud_api: MockCloudApi, config: Config, make_teardown: TeardownFactory
    ) -> None:
        cloud_api.deny(config.host_subscription_id, "ambient")
        cloud_api.deny(config.host_subscription_id, "service_principal")
        teardown, _, _ = make_teardown([Target(id=SUB_A)])

        with pytest.raises(NoAuthorizedCredential):
            await teardown.run()


def test_summary_lines() -> None:
    summary = TeardownSummary(deleted=[SUB_A], absent=[SUB_B], failures={SUB_C: "denied"})

    lines = list(summary.lines())

    assert "Exports deleted: 1, already absent: 1" in lines
    assert f"  {SUB_C} Failed: denied" in lines
    assert summary.exit_code == 1
