#!/usr/bin/env python3
"""
Zero-Downtime Deployment Orchestrator

Blue/green deployment of the gateway container behind Caddy. Two slots
(A on 3402, B on 3403) alternate as active/standby; Caddy's upstream is swapped
live through its admin API. Runs on the HOST machine (not inside a container).

Usage:
    python -m deploy.orchestrator deploy                    # Build HEAD and deploy it
    python -m deploy.orchestrator deploy --image gateway:x  # Deploy an existing image
    python -m deploy.orchestrator rollback                  # Swap back to the previous unit
    python -m deploy.orchestrator status                    # Show current state
"""

import argparse
import logging
import sys
import time

from deploy import metrics
from deploy.caddy import CaddyAdminClient
from deploy.config import Settings, settings
from deploy.errors import ConfigUnreachable, DeploymentError, HealthCheckTimeout
from deploy.health import HealthProber
from deploy.logging_config import setup_logging
from deploy.rollback import RollbackController
from deploy.runtime import ArtifactBuilder, DockerRuntime
from deploy.state import DeploymentState, SlotRegistry, StateStore
from deploy.steps import (
    Context,
    Cutover,
    Decommission,
    EnsureStandbyFree,
    HealthGate,
    Launch,
    Persist,
    Plan,
    PruneImages,
    VerifyRouting,
    run_plan,
)

logger = logging.getLogger(__name__)


def plan_deploy(
    state: DeploymentState, registry: SlotRegistry, artifact: str, s: Settings = settings
) -> Plan:
    active = registry.active_slot_for(state)
    standby = registry.standby_slot_for(state)
    active_unit = registry.unit_for(active)
    standby_unit = registry.unit_for(standby)

    next_state = DeploymentState(
        active_port=standby.port,
        previous_port=active.port,
        previous_unit=active_unit,
    )

    steps = [
        VerifyRouting(registry.upstream_address(active), registry.upstream_address(standby)),
        EnsureStandbyFree(standby_unit, standby.port),
        Launch(standby_unit, artifact, standby.port),
        HealthGate(
            standby_unit,
            registry.health_address(standby),
            standby.port,
            timeout=s.HEALTH_TIMEOUT,
            interval=s.HEALTH_INTERVAL,
        ),
        # ── POINT OF NO RETURN ──
        Cutover(registry.upstream_address(active), registry.upstream_address(standby), standby.port),
        # kept stopped, not removed: rollback restarts it
        Decommission(active_unit, s.STOP_GRACE_SECONDS, remove=False),
    ]
    if s.PRUNE_IMAGES:
        steps.append(PruneImages())
    steps.append(Persist(next_state))
    return Plan("deploy", steps, next_state).validate()


class DeploymentOrchestrator:
    def __init__(
        self,
        ctx: Context,
        registry: SlotRegistry,
        builder: ArtifactBuilder | None = None,
        s: Settings = settings,
    ):
        self.ctx = ctx
        self.registry = registry
        self.builder = builder
        self.settings = s
        self.rollback_controller = RollbackController(ctx, registry, s)

    @classmethod
    def from_settings(cls, s: Settings = settings) -> "DeploymentOrchestrator":
        registry = SlotRegistry.from_settings(s)
        ctx = Context(
            runtime=DockerRuntime.from_settings(s),
            proxy=CaddyAdminClient(s.CADDY_ADMIN_URL, timeout=s.ADMIN_TIMEOUT),
            prober=HealthProber(path=s.HEALTH_PATH, request_timeout=s.HEALTH_REQUEST_TIMEOUT),
            store=StateStore(s.STATE_PATH, registry),
            log_tail=s.LOG_TAIL_LINES,
        )
        return cls(ctx, registry, builder=ArtifactBuilder.from_settings(s), s=s)

    # ── Main Deploy Sequence ──────────────────────────────────────

    def deploy(self, artifact: str) -> DeploymentState:
        state = self.ctx.store.load()
        plan = plan_deploy(state, self.registry, artifact, self.settings)

        active = self.registry.active_slot_for(state)
        standby = self.registry.standby_slot_for(state)
        start = time.monotonic()

        logger.info("=" * 60)
        logger.info(
            f"DEPLOYMENT START: {artifact} | active {active.name}:{active.port} -> "
            f"new {standby.name}:{standby.port}",
            extra={"operation": "deploy", "artifact": artifact, "slot": standby.name, "port": standby.port},
        )
        logger.info("=" * 60)

        try:
            new_state = run_plan(plan, self.ctx)
        except DeploymentError as e:
            metrics.record_operation("deploy", "failed", time.monotonic() - start)
            logger.error(f"DEPLOYMENT FAILED: {e}")
            if isinstance(e, HealthCheckTimeout) and e.diagnostics:
                logger.error(f"  {self.registry.unit_for(standby)} logs:\n{e.diagnostics}")
            raise

        elapsed = round(time.monotonic() - start, 1)
        metrics.record_operation("deploy", "success", elapsed)
        metrics.set_active(standby.name, standby.port, artifact)

        logger.info("=" * 60)
        logger.info(
            f"DEPLOYMENT COMPLETE: {self.registry.unit_for(standby)} "
            f"(port {standby.port}, image {artifact}) is now active ({elapsed}s)",
            extra={"operation": "deploy", "artifact": artifact, "elapsed_s": elapsed},
        )
        logger.info(f"  Previous: {self.registry.unit_for(active)} (port {active.port}) - stopped")
        logger.info("=" * 60)
        return new_state

    def build_and_deploy(self, artifact: str | None = None) -> DeploymentState:
        if artifact is None:
            if self.builder is None:
                raise DeploymentError("No image given and no builder configured")
            artifact = self.builder.build()
        return self.deploy(artifact)

    def rollback(self) -> DeploymentState:
        return self.rollback_controller.rollback()

    # ── Status ────────────────────────────────────────────────────

    def status(self) -> dict:
        state = self.ctx.store.load()
        active = self.registry.active_slot_for(state)
        standby = self.registry.standby_slot_for(state)

        units = {}
        for slot in self.registry.slots:
            unit = self.registry.unit_for(slot)
            units[unit] = self.ctx.runtime.unit_state(unit).value

        try:
            dials = self.ctx.proxy.routed_addresses()
            routed = [
                slot.port for slot in self.registry.slots
                if self.registry.upstream_address(slot) in dials
            ]
        except ConfigUnreachable as e:
            logger.warning(f"Caddy admin unreachable: {e}")
            dials = None
            routed = None

        return {
            "active": {"slot": active.name, "port": active.port, "unit": self.registry.unit_for(active)},
            "standby": {"slot": standby.name, "port": standby.port, "unit": self.registry.unit_for(standby)},
            "rollback_available": state.can_rollback,
            "previous": (
                {"port": state.previous_port, "unit": state.previous_unit}
                if state.can_rollback else None
            ),
            "units": units,
            "caddy_routes_to": routed,
            "caddy_upstreams": dials,
        }

    def print_status(self) -> None:
        info = self.status()
        print(f"\n{'=' * 50}")
        print("  Deployment State")
        print(f"{'=' * 50}")
        print(f"  Active:      slot {info['active']['slot']} (port {info['active']['port']})")
        print(f"  Standby:     slot {info['standby']['slot']} (port {info['standby']['port']})")
        if info["previous"]:
            print(f"  Rollback:    available -> {info['previous']['unit']} (port {info['previous']['port']})")
        else:
            print("  Rollback:    not available")
        print()
        print("  Units:")
        for unit, unit_state in info["units"].items():
            print(f"    {unit:<24} {unit_state}")
        print()
        routed = info["caddy_routes_to"]
        if routed is None:
            print("  Caddy Upstream: unreachable")
        else:
            print(f"  Caddy Upstream: {', '.join(info['caddy_upstreams']) or 'none'}")
            if routed != [info["active"]["port"]]:
                print("  WARNING: Caddy routing does not match the recorded active port")
        print(f"{'=' * 50}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Zero-Downtime Deployment Orchestrator"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    deploy_cmd = sub.add_parser("deploy", help="Build and deploy into the standby slot")
    deploy_cmd.add_argument(
        "--image",
        help="Deploy an existing image reference instead of building HEAD",
    )
    deploy_cmd.add_argument(
        "--no-pull",
        action="store_true",
        help="Build the current checkout without git pull",
    )
    deploy_cmd.add_argument(
        "--health-timeout",
        type=float,
        help=f"Seconds to wait for the new unit to become healthy (default: {settings.HEALTH_TIMEOUT:g})",
    )

    sub.add_parser("rollback", help="Swap traffic back to the previous unit")
    sub.add_parser("status", help="Show current state")

    parser.add_argument(
        "--state-path",
        help=f"Path to the state file (default: {settings.STATE_PATH})",
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    overrides = {}
    if args.state_path:
        overrides["STATE_PATH"] = args.state_path
    if getattr(args, "no_pull", False):
        overrides["GIT_PULL"] = False
    if getattr(args, "health_timeout", None) is not None:
        overrides["HEALTH_TIMEOUT"] = args.health_timeout
    s = settings.model_copy(update=overrides) if overrides else settings

    setup_logging(s.LOG_FILE, s.LOG_LEVEL)
    orchestrator = DeploymentOrchestrator.from_settings(s)

    try:
        if args.command == "deploy":
            orchestrator.build_and_deploy(args.image)
        elif args.command == "rollback":
            orchestrator.rollback()
        elif args.command == "status":
            orchestrator.print_status()
    except HealthCheckTimeout as e:
        print(f"\nDeployment error: {e}", file=sys.stderr)
        if e.diagnostics:
            print("  Recent unit logs:", file=sys.stderr)
            print(e.diagnostics, file=sys.stderr)
        return 1
    except DeploymentError as e:
        print(f"\nDeployment error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nAborted by user.", file=sys.stderr)
        return 130
    finally:
        metrics.flush(s.METRICS_TEXTFILE)
    return 0


if __name__ == "__main__":
    sys.exit(main())
