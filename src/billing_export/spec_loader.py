"""Plan file loading with validation.

All file operations enforce a size limit; validation happens at the
boundary so a bad plan fails before any cloud call.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_PLAN_FILE_SIZE_BYTES
from .models import PlanSpec

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when plan loading or validation fails."""

    pass


def load_plan(plan_path: Path | None) -> PlanSpec:
    """Load and validate a plan from YAML.

    Args:
        plan_path: Path to the plan file, or None for the built-in defaults.

    Returns:
        Validated PlanSpec.

    Raises:
        SpecLoadError: If the plan cannot be loaded or fails validation.
    """
    if plan_path is None:
        return PlanSpec()

    if not plan_path.exists():
        raise SpecLoadError(f"Plan file not found: {plan_path}")

    try:
        file_size = plan_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat plan file {plan_path}: {e}") from e

    if file_size > MAX_PLAN_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Plan file exceeds maximum size of {MAX_PLAN_FILE_SIZE_BYTES} bytes: {plan_path}"
        )

    try:
        content = plan_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read plan file {plan_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {plan_path}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Plan file must contain a YAML mapping: {plan_path}")

    # Both flat files and an apiVersion/kind/spec wrapper are accepted
    if "apiVersion" in raw_data and "spec" in raw_data:
        plan_data = raw_data.get("spec") or {}
        if not isinstance(plan_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {plan_path}")
    else:
        plan_data = raw_data

    try:
        plan = PlanSpec.model_validate(plan_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {plan_path}:\n{error_list}") from e

    logger.info("Loaded plan from %s", plan_path)
    return plan
