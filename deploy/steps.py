"""
Typed deployment steps and the interpreter that runs them.

A deploy or rollback is planned up front as an ordered list of steps ending in a
single Persist. Each step returns CONTINUE or ABORT. Before the Cutover step
(the point of no return) an abort unwinds the completed steps in reverse; after
it, only best-effort cleanup and the final Persist remain.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from deploy.errors import (
    CommandFailed,
    ConfigApplyFailed,
    ConfigUnreachable,
    DecommissionFailed,
    DeploymentError,
    HealthCheckTimeout,
    PreviousUnitGone,
    RoutingDiverged,
    StandbyOccupied,
    UpstreamNotFound,
)
from deploy.caddy import find_upstreams
from deploy.runtime import ContainerRuntime, UnitState
from deploy.state import DeploymentState, StateStore

logger = logging.getLogger(__name__)


class Outcome(Enum):
    CONTINUE = "continue"
    ABORT = "abort"


@dataclass
class StepResult:
    outcome: Outcome
    error: Optional[DeploymentError] = None

    @classmethod
    def ok(cls) -> "StepResult":
        return cls(Outcome.CONTINUE)

    @classmethod
    def abort(cls, error: DeploymentError) -> "StepResult":
        return cls(Outcome.ABORT, error)


@dataclass
class Context:
    """Collaborators a plan runs against."""
    runtime: ContainerRuntime
    proxy: object
    prober: object
    store: StateStore
    log_tail: int = 50


class Step:
    best_effort = False
    commits_routing = False

    @property
    def title(self) -> str:
        raise NotImplementedError

    def execute(self, ctx: Context) -> StepResult:
        raise NotImplementedError

    def compensate(self, ctx: Context) -> None:
        """Undo this step's side effects. Only called for aborts before the cutover."""


# ── Runtime steps ─────────────────────────────────────────────

@dataclass
class EnsureStandbyFree(Step):
    unit: str
    port: int

    @property
    def title(self) -> str:
        return f"Clearing standby slot {self.unit} (port {self.port})"

    def execute(self, ctx: Context) -> StepResult:
        state = ctx.runtime.unit_state(self.unit)
        if state == UnitState.MISSING:
            logger.info(f"  {self.unit} not present, standby is free")
            return StepResult.ok()
        logger.info(f"  Stale {self.unit} found ({state.value}), removing it...")
        try:
            ctx.runtime.remove(self.unit, force=True)
        except CommandFailed as e:
            return StepResult.abort(StandbyOccupied(f"Could not clear standby unit {self.unit}: {e}"))
        return StepResult.ok()


@dataclass
class Launch(Step):
    unit: str
    artifact: str
    port: int

    @property
    def title(self) -> str:
        return f"Starting {self.unit} from {self.artifact} on port {self.port}"

    def execute(self, ctx: Context) -> StepResult:
        try:
            ctx.runtime.launch(self.unit, self.artifact, self.port)
        except CommandFailed as e:
            return StepResult.abort(e)
        return StepResult.ok()

    def compensate(self, ctx: Context) -> None:
        logger.info(f"  Removing {self.unit}...")
        try:
            ctx.runtime.remove(self.unit, force=True)
        except CommandFailed as e:
            logger.error(f"  Could not remove {self.unit}, clean it up manually: {e}")


@dataclass
class EnsureRunning(Step):
    unit: str
    grace_seconds: int = 10
    started: bool = field(default=False, init=False)

    @property
    def title(self) -> str:
        return f"Making sure {self.unit} is running"

    def execute(self, ctx: Context) -> StepResult:
        state = ctx.runtime.unit_state(self.unit)
        if state == UnitState.RUNNING:
            logger.info(f"  {self.unit} is already running")
            return StepResult.ok()
        if state == UnitState.MISSING:
            return StepResult.abort(
                PreviousUnitGone(
                    f"Previous unit {self.unit} no longer exists; run a fresh deploy instead"
                )
            )
        logger.info(f"  {self.unit} is stopped, starting it...")
        try:
            ctx.runtime.start(self.unit)
        except CommandFailed as e:
            return StepResult.abort(e)
        self.started = True
        return StepResult.ok()

    def compensate(self, ctx: Context) -> None:
        if not self.started:
            return
        logger.info(f"  Stopping {self.unit} again...")
        try:
            ctx.runtime.stop(self.unit, self.grace_seconds)
        except CommandFailed as e:
            logger.error(f"  Could not stop {self.unit}: {e}")


@dataclass
class HealthGate(Step):
    unit: str
    address: str
    port: int
    timeout: float
    interval: float

    @property
    def title(self) -> str:
        return f"Health checking {self.address} (max {self.timeout:g}s)"

    def execute(self, ctx: Context) -> StepResult:
        if ctx.prober.probe(self.address, self.timeout, self.interval):
            return StepResult.ok()
        try:
            diagnostics = ctx.runtime.logs(self.unit, ctx.log_tail)
        except CommandFailed as e:
            logger.warning(f"  Could not collect logs from {self.unit}: {e}")
            diagnostics = ""
        return StepResult.abort(
            HealthCheckTimeout(
                f"{self.unit} did not become healthy on port {self.port} within {self.timeout:g}s",
                diagnostics=diagnostics,
            )
        )


# ── Routing ───────────────────────────────────────────────────

@dataclass
class VerifyRouting(Step):
    active_address: str
    standby_address: str

    @property
    def title(self) -> str:
        return f"Checking Caddy routes to {self.active_address}"

    def execute(self, ctx: Context) -> StepResult:
        try:
            document = ctx.proxy.read_config().body
        except ConfigUnreachable as e:
            return StepResult.abort(e)
        if find_upstreams(document, self.standby_address):
            # an earlier run cut over but died before saving state
            return StepResult.abort(
                RoutingDiverged(
                    f"Caddy already routes to {self.standby_address} but the state file says "
                    f"{self.active_address} is active; reconcile the state file before deploying"
                )
            )
        if not find_upstreams(document, self.active_address):
            return StepResult.abort(
                UpstreamNotFound(f"No reverse_proxy upstream dials {self.active_address}")
            )
        return StepResult.ok()


@dataclass
class Cutover(Step):
    old_address: str
    new_address: str
    port: int

    commits_routing = True

    @property
    def title(self) -> str:
        return f"Switching Caddy upstream {self.old_address} -> {self.new_address}"

    def execute(self, ctx: Context) -> StepResult:
        try:
            ctx.proxy.cutover(self.old_address, self.new_address)
        except (ConfigUnreachable, ConfigApplyFailed) as e:
            return StepResult.abort(e)
        return StepResult.ok()


# ── After the cutover ─────────────────────────────────────────

@dataclass
class Decommission(Step):
    unit: str
    grace_seconds: int
    remove: bool = False

    best_effort = True

    @property
    def title(self) -> str:
        action = "Stopping and removing" if self.remove else "Stopping"
        return f"{action} old unit {self.unit} ({self.grace_seconds}s grace)"

    def execute(self, ctx: Context) -> StepResult:
        try:
            unit_state = ctx.runtime.unit_state(self.unit)
        except CommandFailed as e:
            return StepResult.abort(DecommissionFailed(f"Could not inspect {self.unit}: {e}"))
        if unit_state == UnitState.MISSING:
            logger.info(f"  {self.unit} not present, nothing to stop")
            return StepResult.ok()
        stopped = True
        try:
            ctx.runtime.stop(self.unit, self.grace_seconds)
        except CommandFailed as e:
            stopped = False
            logger.warning(f"  {self.unit} did not stop cleanly: {e}")
        if self.remove:
            try:
                ctx.runtime.remove(self.unit, force=not stopped)
            except CommandFailed as e:
                return StepResult.abort(DecommissionFailed(f"Could not remove {self.unit}: {e}"))
        if not stopped:
            return StepResult.abort(DecommissionFailed(f"{self.unit} did not stop cleanly"))
        return StepResult.ok()


@dataclass
class PruneImages(Step):
    best_effort = True

    @property
    def title(self) -> str:
        return "Pruning dangling images"

    def execute(self, ctx: Context) -> StepResult:
        try:
            ctx.runtime.prune_images()
        except CommandFailed as e:
            return StepResult.abort(e)
        return StepResult.ok()


@dataclass
class Persist(Step):
    state: DeploymentState

    @property
    def title(self) -> str:
        return f"Saving state (active port {self.state.active_port})"

    def execute(self, ctx: Context) -> StepResult:
        try:
            ctx.store.save(self.state)
        except OSError as e:
            return StepResult.abort(
                DeploymentError(
                    f"Could not save state to {ctx.store.path}: {e}. Caddy already routes to "
                    f"port {self.state.active_port}; fix the state file by hand"
                )
            )
        return StepResult.ok()


# ── Plan + interpreter ────────────────────────────────────────

@dataclass
class Plan:
    operation: str
    steps: list
    next_state: DeploymentState

    def validate(self) -> "Plan":
        """Check the ordering rules that make an abort leave routing untouched."""
        cutovers = [i for i, s in enumerate(self.steps) if isinstance(s, Cutover)]
        if len(cutovers) != 1:
            raise ValueError(f"{self.operation} plan needs exactly one Cutover, found {len(cutovers)}")
        cut = cutovers[0]
        target = self.steps[cut].port

        gated = any(
            isinstance(s, HealthGate) and s.port == target for s in self.steps[:cut]
        )
        if not gated:
            raise ValueError(f"{self.operation} plan cuts over to port {target} without a health gate")

        if any(isinstance(s, Decommission) for s in self.steps[:cut]):
            raise ValueError(f"{self.operation} plan decommissions a unit before the cutover")

        persists = [i for i, s in enumerate(self.steps) if isinstance(s, Persist)]
        if persists != [len(self.steps) - 1]:
            raise ValueError(f"{self.operation} plan must end with a single Persist")
        if self.steps[-1].state != self.next_state:
            raise ValueError(f"{self.operation} plan persists a different state than it promises")
        if self.next_state.active_port != target:
            raise ValueError(f"{self.operation} plan persists a port it never routed to")
        return self


def run_plan(plan: Plan, ctx: Context) -> DeploymentState:
    """Execute a plan. Raises the abort reason if a step before the cutover fails."""
    plan.validate()
    done = []
    routed = False
    total = len(plan.steps)

    for n, step in enumerate(plan.steps, 1):
        logger.info(f"Step {n}/{total}: {step.title}...", extra={"operation": plan.operation, "step": n})
        try:
            result = step.execute(ctx)
        except DeploymentError as e:
            result = StepResult.abort(e)

        if result.outcome == Outcome.CONTINUE:
            logger.info(f"Step {n}/{total}: done", extra={"operation": plan.operation, "step": n})
            done.append(step)
            routed = routed or step.commits_routing
            continue

        error = result.error
        if routed and step.best_effort:
            logger.warning(f"Step {n}/{total}: {error} (continuing, traffic already moved)")
            continue
        if routed:
            logger.critical(f"Step {n}/{total} failed after cutover: {error}")
            raise error

        logger.error(f"Step {n}/{total} failed: {error}")
        # the failing step may have half-happened (e.g. docker run created the container)
        for undo in reversed(done + [step]):
            undo.compensate(ctx)
        raise error

    return plan.next_state
