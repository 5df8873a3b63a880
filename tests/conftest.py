"""Pytest configuration and fixtures."""

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import MockCloudApi  # noqa: E402

from billing_export.config import Config  # noqa: E402
from billing_export.context import RunContext  # noqa: E402
from billing_export.models import PlanSpec  # noqa: E402
from billing_export.retry import BackoffPolicy  # noqa: E402
from billing_export.worker import ConvergenceWorker  # noqa: E402

HOST_SUBSCRIPTION_ID = "00000000-0000-0000-0000-0000000a1b2c"

# Retry schedules short enough for unit tests
FAST_AUTH_RETRY = BackoffPolicy(max_attempts=3, interval=0.01, max_interval=0.01, jitter=0.0)
FAST_CONFIRM_RETRY = BackoffPolicy(max_attempts=2, interval=0.01, max_interval=0.01, jitter=0.0)


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
    """Build a valid Config with test-sized timeouts."""

    def factory(**overrides: Any) -> Config:
        values: dict[str, Any] = {
            "host_subscription_id": HOST_SUBSCRIPTION_ID,
            "state_file": tmp_path / "known_subscriptions.jsonl",
            "propagation_max_wait_seconds": 0.2,
            "propagation_poll_interval_seconds": 0.02,
            "operation_timeout_seconds": 0.3,
            "operation_poll_interval_seconds": 0.01,
            "provider_registration_max_wait_seconds": 0.2,
        }
        values.update(overrides)
        return Config(**values)

    return factory


@pytest.fixture
def config(make_config: Callable[..., Config]) -> Config:
    return make_config()


@pytest.fixture
def plan() -> PlanSpec:
    return PlanSpec()


@pytest.fixture
def cloud_api(config: Config) -> MockCloudApi:
    return MockCloudApi(destination_id=config.storage_account_id)


@pytest.fixture
def make_worker(
    cloud_api: MockCloudApi, plan: PlanSpec
) -> Callable[..., ConvergenceWorker]:
    """Worker over the mock API with fast retry schedules."""

    def factory(config: Config, ctx: RunContext | None = None) -> ConvergenceWorker:
        return ConvergenceWorker(
            cloud_api,
            plan,
            config,
            ctx or RunContext(),
            auth_retry=FAST_AUTH_RETRY,
            confirm_retry=FAST_CONFIRM_RETRY,
        )

    return factory
