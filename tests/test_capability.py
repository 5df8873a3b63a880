"""Tests for capability probing and the propagation wait."""

from __future__ import annotations

import asyncio
import json
import time
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import ServiceRequestError
from azure_mock import MockCloudApi, MockTokenCredential

from billing_export.capability import CapabilityProber, PropagationWaiter
from billing_export.context import RunContext
from billing_export.errors import RunCancelled
from billing_export.models import Target

SUB_A = "aaaaaaaa-0000-0000-0000-00000000000a"
CAPABILITY = "Microsoft.CostManagement/exports/write"


@pytest.fixture
def waiter(cloud_api: MockCloudApi) -> PropagationWaiter:
    return PropagationWaiter(CapabilityProber(cloud_api), RunContext())


@pytest.mark.asyncio
async def test_granted_immediately(cloud_api: MockCloudApi, waiter: PropagationWaiter) -> None:
    granted = await waiter.wait_until_granted(
        MockTokenCredential(), Target(id=SUB_A), CAPABILITY, max_wait=1.0, poll_interval=0.01
    )

    assert granted
    assert cloud_api.count("check_capability") == 1


@pytest.mark.asyncio
async def test_granted_after_propagation(cloud_api: MockCloudApi, waiter: PropagationWaiter) -> None:
    cloud_api.capability_after[SUB_A] = 3

    granted = await waiter.wait_until_granted(
        MockTokenCredential(), Target(id=SUB_A), CAPABILITY, max_wait=1.0, poll_interval=0.01
    )

    assert granted
    assert cloud_api.count("check_capability") == 4


@pytest.mark.asyncio
async def test_wait_is_bounded(cloud_api: MockCloudApi, waiter: PropagationWaiter) -> None:
    cloud_api.never_granted.add(SUB_A)
    start = time.monotonic()

    granted = await waiter.wait_until_granted(
        MockTokenCredential(), Target(id=SUB_A), CAPABILITY, max_wait=0.1, poll_interval=0.02
    )

    assert not granted
    assert time.monotonic() - start < 0.5
    assert cloud_api.count("check_capability") >= 2


@pytest.mark.asyncio
async def test_zero_wait_checks_once(cloud_api: MockCloudApi, waiter: PropagationWaiter) -> None:
    cloud_api.never_granted.add(SUB_A)

    granted = await waiter.wait_until_granted(
        MockTokenCredential(), Target(id=SUB_A), CAPABILITY, max_wait=0, poll_interval=1.0
    )

    assert not granted
    assert cloud_api.count("check_capability") == 1


@pytest.mark.asyncio
async def test_cancellation_interrupts_wait(cloud_api: MockCloudApi) -> None:
    cloud_api.never_granted.add(SUB_A)
    ctx = RunContext()
    waiter = PropagationWaiter(CapabilityProber(cloud_api), ctx)
    asyncio.get_running_loop().call_later(0.05, ctx.cancel, "signal")

    with pytest.raises(RunCancelled):
        await waiter.wait_until_granted(
            MockTokenCredential(), Target(id=SUB_A), CAPABILITY, max_wait=30, poll_interval=5
        )


@pytest.mark.asyncio
async def test_read_errors_count_as_not_granted() -> None:
    api = MagicMock()
    api.check_capability.side_effect = ServiceRequestError("dns failure")

    result = await CapabilityProber(api).check(MockTokenCredential(), Target(id=SUB_A), CAPABILITY)

    assert not result.granted
    assert result.detail is not None
    assert "dns failure" in result.detail


@pytest.mark.asyncio
async def test_unparseable_response_counts_as_not_granted() -> None:
    api = MagicMock()
    api.check_capability.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)

    result = await CapabilityProber(api).check(MockTokenCredential(), Target(id=SUB_A), CAPABILITY)

    assert not result.granted
    assert result.detail is not None
    assert "Expecting value" in result.detail
