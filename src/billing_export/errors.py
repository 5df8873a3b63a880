"""Error taxonomy for the convergence engine.

Only EnumerationError and SharedInfraError abort a run. Every other error
is isolated to the target that produced it and ends up in the run summary.
"""

from __future__ import annotations


class ExportOperatorError(Exception):
    """Base class for all engine errors."""

    pass


class EnumerationError(ExportOperatorError):
    """The control-plane target listing could not be completed."""

    pass


class SharedInfraError(ExportOperatorError):
    """Shared prerequisites (storage, role grants) could not be provisioned."""

    pass


class NoAuthorizedCredential(ExportOperatorError):
    """Every configured credential strategy failed for a target."""

    def __init__(self, target_id: str, attempts: dict[str, str]) -> None:
        self.target_id = target_id
        self.attempts = attempts
        tried = ", ".join(f"{name}: {reason}" for name, reason in attempts.items()) or "none"
        super().__init__(f"No credential authorized for {target_id} ({tried})")


class PermissionPropagationPending(ExportOperatorError):
    """A granted capability is not yet honored by the control plane."""

    def __init__(self, target_id: str, capability: str, waited_seconds: float) -> None:
        self.target_id = target_id
        self.capability = capability
        self.waited_seconds = waited_seconds
        super().__init__(f"{capability} not effective on {target_id} after {waited_seconds:.0f}s")


class VariantUnsupported(ExportOperatorError):
    """The target rejects this configuration variant; try the next one."""

    pass


class TransientAuthorizationError(ExportOperatorError):
    """401/403-class error expected to clear once permissions propagate.

    ``capability`` marks errors tied to the requested variant (for example a
    dataset the caller cannot read); those fall back to the next variant once
    retries are exhausted instead of failing the target.
    """

    def __init__(self, message: str, *, capability: bool = False) -> None:
        super().__init__(message)
        self.capability = capability


class PermanentAuthorizationDenied(ExportOperatorError):
    """Authorization is refused in a way retries cannot fix (policy, provider ban)."""

    pass


class OperationTimeout(ExportOperatorError):
    """The local poll deadline elapsed; the remote operation may still finish."""

    def __init__(self, operation_id: str, timeout_seconds: float, *, variant: str | None = None) -> None:
        self.operation_id = operation_id
        self.timeout_seconds = timeout_seconds
        self.variant = variant
        super().__init__(f"Operation {operation_id} not terminal after {timeout_seconds:.0f}s")


class ProviderError(ExportOperatorError):
    """Any other provider-side failure."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class RunCancelled(ExportOperatorError):
    """The run was cancelled by deadline or signal while waiting."""

    pass
