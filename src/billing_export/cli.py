"""Billing export CLI (exportctl).

Usage:
    exportctl run                 # Converge every visible subscription
    exportctl run --dry-run       # Log what would change, mutate nothing
    exportctl run -t <sub-id>     # Restrict the run to an allowlist
    exportctl teardown --dry-run  # List the exports that would be deleted
    exportctl teardown --force    # Delete exports and automation without prompting
    exportctl state show          # Print persisted reconciliation records
    exportctl state compact       # Rewrite the state file, one line per target

Flags override the environment configuration read by Config.from_env().
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import click

from .config import DEFAULT_STATE_FILE, Config, ConfigurationError
from .errors import ExportOperatorError
from .main import run_plan, run_teardown, setup_logging
from .models import ReconciliationStatus
from .spec_loader import SpecLoadError
from .state_store import JsonLinesStateStore, StateStoreError

STATUS_COLORS = {
    ReconciliationStatus.CONVERGED: "green",
    ReconciliationStatus.SKIPPED: "yellow",
    ReconciliationStatus.FAILED: "red",
    ReconciliationStatus.PENDING: "cyan",
}


def load_config(**overrides: Any) -> Config:
    """Environment configuration with non-None CLI overrides applied.

    Raises:
        click.ClickException: If the resulting configuration is invalid.
    """
    try:
        config = Config.from_env()
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(config, **changes) if changes else config
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def default_state_file() -> Path:
    return Path(os.environ.get("STATE_FILE", DEFAULT_STATE_FILE))


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="exportctl")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """Billing export CLI (exportctl).

    Converges a daily cost export on every subscription into one shared
    storage account.
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO)


@cli.command()
@click.option("--dry-run", is_flag=True, help="Log mutations instead of performing them")
@click.option("--force", is_flag=True, help="Skip confirmation prompts")
@click.option("--target", "-t", "targets", multiple=True, help="Subscription id to include (repeatable)")
@click.option("--state-file", type=click.Path(dir_okay=False, path_type=Path), help="State file path")
@click.option(
    "--plan-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML plan overriding variants and skip rules",
)
@click.option("--max-workers", type=int, help="Concurrent target workers")
@click.option("--run-timeout", type=float, help="Run deadline in seconds (0 disables)")
@click.option("--skip-automation", is_flag=True, help="Do not deploy the auto-export policy")
def run(
    dry_run: bool,
    force: bool,
    targets: tuple[str, ...],
    state_file: Path | None,
    plan_file: Path | None,
    max_workers: int | None,
    run_timeout: float | None,
    skip_automation: bool,
) -> None:
    """Run the plan once and exit with the summary's exit code."""
    config = load_config(
        dry_run=dry_run or None,
        force=force or None,
        target_ids=targets or None,
        state_file=state_file,
        plan_file=plan_file,
        max_workers=max_workers,
        run_timeout_seconds=run_timeout,
        skip_automation=skip_automation or None,
    )

    try:
        summary = asyncio.run(run_plan(config))
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    header = "Run summary (dry run)" if summary.dry_run else "Run summary"
    click.echo(header)
    for line in summary.lines():
        click.echo(f"  {line}")

    if summary.exit_code == 0:
        click.secho("✓ All targets converged or skipped", fg="green")
    else:
        click.secho("✗ Run finished with failures", fg="red")
    sys.exit(summary.exit_code)


@cli.command()
@click.option("--dry-run", is_flag=True, help="Log deletions instead of performing them")
@click.option("--force", is_flag=True, help="Skip the confirmation prompt")
@click.option("--delete-storage", is_flag=True, help="Also delete the resource group and all exported data")
@click.option("--target", "-t", "targets", multiple=True, help="Subscription id to include (repeatable)")
@click.option("--state-file", type=click.Path(dir_okay=False, path_type=Path), help="State file path")
def teardown(
    dry_run: bool,
    force: bool,
    delete_storage: bool,
    targets: tuple[str, ...],
    state_file: Path | None,
) -> None:
    """Delete the exports and auto-export policy created by runs."""
    config = load_config(
        dry_run=dry_run or None,
        force=force or None,
        target_ids=targets or None,
        state_file=state_file,
    )

    if not config.dry_run and not config.force:
        scope = f"{len(config.target_ids)} target(s)" if config.target_ids else "every visible subscription"
        click.confirm(f"Delete billing exports on {scope}?", abort=True)
        if delete_storage:
            click.confirm(
                f"Delete resource group '{config.resource_group}' and all exported data?", abort=True
            )

    try:
        summary = asyncio.run(run_teardown(config, delete_storage=delete_storage))
    except (SpecLoadError, ExportOperatorError) as e:
        raise click.ClickException(str(e)) from e

    click.echo("Teardown summary (dry run)" if summary.dry_run else "Teardown summary")
    for line in summary.lines():
        click.echo(f"  {line}")

    if summary.exit_code == 0:
        click.secho("✓ Teardown complete", fg="green")
    else:
        click.secho("✗ Teardown finished with failures", fg="red")
    sys.exit(summary.exit_code)


# =============================================================================
# State Commands
# =============================================================================


@cli.group()
def state() -> None:
    """Inspect and maintain the reconciliation state file."""
    pass


@state.command("show")
@click.option("--state-file", type=click.Path(dir_okay=False, path_type=Path), help="State file path")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON records")
def state_show(state_file: Path | None, as_json: bool) -> None:
    """Print the latest record per target."""
    path = state_file or default_state_file()
    try:
        records = JsonLinesStateStore(path).load()
    except StateStoreError as e:
        raise click.ClickException(str(e)) from e

    if not records:
        click.echo(f"No records in {path}")
        return

    for target_id in sorted(records):
        record = records[target_id]
        if as_json:
            click.echo(json.dumps(record.model_dump(mode="json", by_alias=True)))
            continue
        variant = record.variant_used.value if record.variant_used else "-"
        line = f"{target_id}  {record.status.value:<9}  {variant:<10}  {record.last_attempt_at.isoformat()}"
        if record.reason:
            line += f"  {record.reason}"
        click.secho(line, fg=STATUS_COLORS.get(record.status))


@state.command("compact")
@click.option("--state-file", type=click.Path(dir_okay=False, path_type=Path), help="State file path")
def state_compact(state_file: Path | None) -> None:
    """Rewrite the state file with one line per target."""
    path = state_file or default_state_file()
    try:
        kept = JsonLinesStateStore(path).compact()
    except StateStoreError as e:
        raise click.ClickException(str(e)) from e
    click.secho(f"✓ Compacted {path}: {kept} records", fg="green")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
