"""
Rollback: swap Caddy back to the previous unit.

Restarts the unit recorded by the last successful deploy if it is stopped,
health checks it, points Caddy back at it and retires the current unit. One
rollback consumes the recorded history; a second one fails until the next deploy.
"""

import logging
import time

from deploy import metrics
from deploy.config import Settings, settings
from deploy.errors import DeploymentError, NoRollbackAvailable
from deploy.state import DeploymentState, SlotRegistry
from deploy.steps import Context, Cutover, Decommission, EnsureRunning, HealthGate, Persist, Plan, run_plan

logger = logging.getLogger(__name__)


def plan_rollback(state: DeploymentState, registry: SlotRegistry, s: Settings = settings) -> Plan:
    if not state.can_rollback:
        raise NoRollbackAvailable("No previous deployment state found. Cannot roll back.")

    current = registry.active_slot_for(state)
    previous = registry.slot_for_port(state.previous_port)
    current_unit = registry.unit_for(current)

    next_state = DeploymentState(active_port=previous.port)
    steps = [
        EnsureRunning(state.previous_unit, grace_seconds=s.STOP_GRACE_SECONDS),
        HealthGate(
            state.previous_unit,
            registry.health_address(previous),
            previous.port,
            timeout=s.ROLLBACK_HEALTH_TIMEOUT,
            interval=s.HEALTH_INTERVAL,
        ),
        Cutover(registry.upstream_address(current), registry.upstream_address(previous), previous.port),
        Decommission(current_unit, s.STOP_GRACE_SECONDS, remove=True),
        Persist(next_state),
    ]
    return Plan("rollback", steps, next_state).validate()


class RollbackController:
    def __init__(self, ctx: Context, registry: SlotRegistry, s: Settings = settings):
        self.ctx = ctx
        self.registry = registry
        self.settings = s

    def rollback(self) -> DeploymentState:
        state = self.ctx.store.load()
        plan = plan_rollback(state, self.registry, self.settings)

        current = self.registry.active_slot_for(state)
        previous = self.registry.slot_for_port(state.previous_port)
        start = time.monotonic()

        logger.info("=" * 60)
        logger.info(
            f"ROLLBACK: {self.registry.unit_for(current)} (port {current.port}) -> "
            f"{state.previous_unit} (port {previous.port})",
            extra={"operation": "rollback", "unit": state.previous_unit, "port": previous.port},
        )
        logger.info("=" * 60)

        try:
            new_state = run_plan(plan, self.ctx)
        except DeploymentError as e:
            metrics.record_operation("rollback", "failed", time.monotonic() - start)
            logger.error(f"ROLLBACK FAILED: {e}")
            raise

        elapsed = round(time.monotonic() - start, 1)
        metrics.record_operation("rollback", "success", elapsed)
        metrics.set_active(previous.name, previous.port)

        logger.info("=" * 60)
        logger.info(
            f"ROLLBACK COMPLETE: {state.previous_unit} (port {previous.port}) is now active ({elapsed}s)",
            extra={"operation": "rollback", "elapsed_s": elapsed},
        )
        logger.info("=" * 60)
        return new_state
