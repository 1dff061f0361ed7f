import pytest

from deploy.errors import ConfigApplyFailed, HealthCheckTimeout, NoRollbackAvailable, PreviousUnitGone
from deploy.health import HealthProber
from deploy.orchestrator import DeploymentOrchestrator
from deploy.runtime import UnitState
from deploy.state import DeploymentState
from deploy.steps import Context

from conftest import FakeClock, FakeSession, caddy_config, make_response


def test_rollback_after_deploy_restores_previous_slot(orchestrator, store, caddy, runtime):
    orchestrator.deploy("gateway:build_42")

    restored = orchestrator.rollback()

    assert restored == DeploymentState(active_port=3402)
    assert store.load() == restored
    assert caddy.document == caddy_config("localhost:3402")
    assert ("start", "x402-gateway-a") in runtime.calls
    assert runtime.running_on(3402) == ["x402-gateway-a"]
    assert runtime.unit_state("x402-gateway-b") == UnitState.MISSING


def test_second_rollback_is_refused_without_side_effects(orchestrator, store, caddy, runtime):
    orchestrator.deploy("gateway:build_42")
    orchestrator.rollback()
    calls_before = list(runtime.calls)
    loads_before = len(caddy.loads)
    state_bytes = store.path.read_bytes()

    with pytest.raises(NoRollbackAvailable):
        orchestrator.rollback()

    assert runtime.calls == calls_before
    assert len(caddy.loads) == loads_before
    assert store.path.read_bytes() == state_bytes


def test_rollback_on_fresh_install_is_refused(orchestrator, runtime):
    with pytest.raises(NoRollbackAvailable):
        orchestrator.rollback()
    assert runtime.calls == []


def test_previous_unit_gone(orchestrator, store, caddy, runtime):
    orchestrator.deploy("gateway:build_42")
    del runtime.units["x402-gateway-a"]
    state_bytes = store.path.read_bytes()

    with pytest.raises(PreviousUnitGone):
        orchestrator.rollback()

    assert store.path.read_bytes() == state_bytes
    assert caddy.document == caddy_config("localhost:3403")
    assert runtime.running_on(3403) == ["x402-gateway-b"]


def test_unhealthy_previous_unit_is_stopped_again(orchestrator, store, caddy, runtime, prober):
    orchestrator.deploy("gateway:build_42")
    prober.sick_ports.add(3402)
    state_bytes = store.path.read_bytes()

    with pytest.raises(HealthCheckTimeout):
        orchestrator.rollback()

    assert prober.calls[-1] == ("http://localhost:3402", 30, 2)
    assert store.path.read_bytes() == state_bytes
    assert caddy.document == caddy_config("localhost:3403")
    assert runtime.unit_state("x402-gateway-a") == UnitState.STOPPED
    assert runtime.running_on(3403) == ["x402-gateway-b"]


def test_cutover_failure_leaves_current_unit_serving(orchestrator, store, caddy, runtime):
    orchestrator.deploy("gateway:build_42")
    caddy.fail_apply = True

    with pytest.raises(ConfigApplyFailed):
        orchestrator.rollback()

    assert store.load().can_rollback
    assert runtime.running_on(3403) == ["x402-gateway-b"]
    assert runtime.unit_state("x402-gateway-a") == UnitState.STOPPED


def test_rollback_to_already_running_unit(orchestrator, runtime, caddy):
    orchestrator.deploy("gateway:build_42")
    runtime.units["x402-gateway-a"]["state"] = UnitState.RUNNING

    orchestrator.rollback()

    assert ("start", "x402-gateway-a") not in runtime.calls
    assert caddy.document == caddy_config("localhost:3402")


def test_rollback_resumes_after_crash_between_cutover_and_save(orchestrator, store, caddy, runtime):
    orchestrator.deploy("gateway:build_42")
    # previous rollback swapped Caddy back to A and died before saving
    runtime.units["x402-gateway-a"]["state"] = UnitState.RUNNING
    caddy.document = caddy_config("localhost:3402")
    loads_before = len(caddy.loads)

    assert orchestrator.rollback() == DeploymentState(active_port=3402)
    assert len(caddy.loads) == loads_before
    assert store.load() == DeploymentState(active_port=3402)


def test_deploy_then_rollback_scenario_with_real_prober(runtime, caddy, store, registry, test_settings):
    """Slot A on 3402 -> build_42 healthy at t=4s on 3403 -> rollback to 3402."""
    clock = FakeClock()

    def health(url, **kwargs):
        port = int(url.split(":")[2].split("/")[0])
        if runtime.running_on(port) and (port != 3403 or clock.now >= 4):
            return make_response(200, {"status": "ok"})
        return make_response(503, {"status": "starting"})

    prober = HealthProber(session=FakeSession(get=health), clock=clock, sleep=clock.sleep)
    ctx = Context(runtime=runtime, proxy=caddy, prober=prober, store=store)
    orchestrator = DeploymentOrchestrator(ctx, registry, s=test_settings)

    assert orchestrator.deploy("gateway:build_42") == DeploymentState(
        active_port=3403, previous_port=3402, previous_unit="x402-gateway-a"
    )
    assert clock.now == 4

    assert orchestrator.rollback() == DeploymentState(active_port=3402)
    assert store.load() == DeploymentState(active_port=3402)
    assert caddy.document == caddy_config("localhost:3402")


def test_never_healthy_scenario_with_real_prober(runtime, caddy, store, registry, test_settings):
    clock = FakeClock()
    prober = HealthProber(
        session=FakeSession(get=make_response(503, {"status": "starting"})),
        clock=clock,
        sleep=clock.sleep,
    )
    ctx = Context(runtime=runtime, proxy=caddy, prober=prober, store=store)
    orchestrator = DeploymentOrchestrator(ctx, registry, s=test_settings)

    with pytest.raises(HealthCheckTimeout):
        orchestrator.deploy("gateway:build_43")

    assert clock.now == 60
    assert store.load() == DeploymentState(active_port=3402)
    assert not store.path.exists()
    assert runtime.running_on(3403) == []
