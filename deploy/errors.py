class DeploymentError(Exception):
    """Raised when a deployment or rollback step fails."""
    pass


class StateCorrupt(DeploymentError):
    """The persisted deployment state could not be read or is inconsistent."""


class StandbyOccupied(DeploymentError):
    """A stale unit on the standby slot could not be cleared."""


class CommandFailed(DeploymentError):
    """A container runtime command exited non-zero or timed out."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class HealthCheckTimeout(DeploymentError):
    """A candidate unit never reported healthy before the deadline."""

    def __init__(self, message: str, diagnostics: str = ""):
        super().__init__(message)
        self.diagnostics = diagnostics


class ConfigUnreachable(DeploymentError):
    """The proxy admin API could not be read."""


class ConfigApplyFailed(DeploymentError):
    """The proxy rejected (or never received) the rewritten configuration."""


class ConfigConflict(ConfigApplyFailed):
    """The proxy configuration changed between read and write."""


class UpstreamNotFound(ConfigApplyFailed):
    """Neither the old nor the new upstream address appears in the proxy config."""


class NoRollbackAvailable(DeploymentError):
    """No previous deployment is recorded."""


class PreviousUnitGone(DeploymentError):
    """The unit recorded for rollback no longer exists in the runtime."""


class DecommissionFailed(DeploymentError):
    """The old unit did not stop cleanly. Logged only; routing already moved."""


class RoutingDiverged(DeploymentError):
    """Caddy already routes to the slot the state file calls standby."""
