"""Tests for the process entry point."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from billing_export import main as entry
from billing_export.executor import RunSummary
from billing_export.models import ReconciliationRecord, ReconciliationStatus

HOST_ID = "12345678-1234-1234-1234-123456abcdef"


@pytest.mark.asyncio
async def test_configuration_error_exits_with_2() -> None:
    with patch.dict(os.environ, {}, clear=True), patch.object(entry, "setup_logging"):
        assert await entry.main() == 2


@pytest.mark.asyncio
async def test_plan_error_exits_with_2(tmp_path: Path) -> None:
    plan_file = tmp_path / "plan.yaml"
    plan_file.write_text("variants: [broken")
    env = {"HOST_SUBSCRIPTION_ID": HOST_ID, "PLAN_FILE": str(plan_file)}

    with patch.dict(os.environ, env, clear=True), patch.object(entry, "setup_logging"):
        assert await entry.main() == 2


@pytest.mark.asyncio
async def test_summary_exit_code_is_returned(tmp_path: Path) -> None:
    summary = RunSummary(
        records={"t": ReconciliationRecord(target_id="t", resource_name="r", status=ReconciliationStatus.FAILED)}
    )
    env = {"HOST_SUBSCRIPTION_ID": HOST_ID, "STATE_FILE": str(tmp_path / "state.jsonl")}

    with (
        patch.dict(os.environ, env, clear=True),
        patch.object(entry, "setup_logging"),
        patch.object(entry, "install_signal_handlers"),
        patch.object(entry, "PlanExecutor") as executor_cls,
    ):
        executor_cls.return_value.run = AsyncMock(return_value=summary)
        code = await entry.main()

    assert code == 1
    config, plan, api, store, ctx = executor_cls.call_args.args
    assert config.host_subscription_id == HOST_ID
    assert store.path == tmp_path / "state.jsonl"


def test_json_log_format() -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        entry.setup_logging(logging.DEBUG)
        handler = root.handlers[0]
        record = logging.LogRecord("billing_export.worker", logging.INFO, __file__, 1, "Export converged", None, None)
        record.target_id = "abc"

        data = json.loads(handler.format(record))
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)

    assert data["message"] == "Export converged"
    assert data["level"] == "INFO"
    assert data["target_id"] == "abc"
    assert data["timestamp"].endswith("Z")


def test_signal_handlers_cancel_run() -> None:
    ctx = MagicMock()
    loop = MagicMock()

    with patch("billing_export.main.asyncio.get_running_loop", return_value=loop):
        entry.install_signal_handlers(ctx)

    assert loop.add_signal_handler.call_count == 2
    sig, callback = loop.add_signal_handler.call_args.args
    callback()
    ctx.cancel.assert_called_once_with(f"Received {sig.name}")
