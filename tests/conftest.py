import copy
import json

import pytest
import requests

from deploy.caddy import CaddyAdminClient, ConfigDocument
from deploy.config import Settings
from deploy.errors import CommandFailed, ConfigApplyFailed, ConfigUnreachable
from deploy.orchestrator import DeploymentOrchestrator
from deploy.runtime import ContainerRuntime, UnitState
from deploy.state import SlotRegistry, StateStore
from deploy.steps import Context


def caddy_config(dial: str = "localhost:3402") -> dict:
    """Live config shape of the gateway: paid and free routes share one upstream."""
    return {
        "admin": {"listen": "localhost:2019"},
        "apps": {
            "http": {
                "servers": {
                    "srv0": {
                        "listen": [":443"],
                        "routes": [
                            {
                                "match": [{"host": ["api.example.com"]}],
                                "handle": [
                                    {
                                        "handler": "subroute",
                                        "routes": [
                                            {
                                                "match": [{"path": ["/paid/*"]}],
                                                "handle": [
                                                    {
                                                        "handler": "reverse_proxy",
                                                        "upstreams": [{"dial": dial}],
                                                    }
                                                ],
                                            },
                                            {
                                                "match": [{"path": ["/free/*"]}],
                                                "handle": [
                                                    {
                                                        "handler": "reverse_proxy",
                                                        "headers": {"request": {"set": {"X-Tier": ["free"]}}},
                                                        "upstreams": [{"dial": dial}],
                                                    }
                                                ],
                                            },
                                        ],
                                    }
                                ],
                                "terminal": True,
                            },
                            {
                                "match": [{"host": ["status.example.com"]}],
                                "handle": [
                                    {
                                        "handler": "reverse_proxy",
                                        "upstreams": [{"dial": "localhost:9090"}],
                                    }
                                ],
                            },
                        ],
                    }
                }
            }
        },
    }


def make_response(status_code: int = 200, body=None, headers=None, text: str | None = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    if text is not None:
        response._content = text.encode()
    else:
        response._content = json.dumps(body if body is not None else {}).encode()
    response.headers.update(headers or {})
    return response


class FakeSession:
    """Stands in for requests.Session; replies from a queue or a callable."""

    def __init__(self, get=None, post=None):
        self._get = get
        self._post = post
        self.requests = []

    def _reply(self, handler, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        if isinstance(handler, BaseException):
            raise handler
        if callable(handler):
            return handler(url, **kwargs)
        return handler

    def get(self, url, **kwargs):
        return self._reply(self._get, "GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._reply(self._post, "POST", url, **kwargs)


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRuntime(ContainerRuntime):
    """In-memory docker: units keyed by name with a state, port and image."""

    def __init__(self):
        self.units = {}
        self.calls = []
        self.fail_launch = False
        self.fail_stop = set()
        self.fail_remove = set()
        self.fail_prune = False
        self.fail_inspect = set()
        self.fail_logs = False
        self.unit_logs = {}

    def add(self, name: str, port: int, artifact: str = "gateway:old", state: UnitState = UnitState.RUNNING):
        self.units[name] = {"state": state, "port": port, "artifact": artifact}

    def running_on(self, port: int) -> list[str]:
        return [
            name for name, unit in self.units.items()
            if unit["port"] == port and unit["state"] == UnitState.RUNNING
        ]

    def unit_state(self, name):
        if name in self.fail_inspect:
            raise CommandFailed(f"Command timed out after 60s: docker inspect {name}")
        unit = self.units.get(name)
        return unit["state"] if unit else UnitState.MISSING

    def launch(self, name, artifact, host_port):
        self.calls.append(("launch", name, artifact, host_port))
        if name in self.units:
            raise CommandFailed(f"Conflict. The container name {name} is already in use", returncode=125)
        if self.fail_launch:
            raise CommandFailed(f"docker run {name} failed", returncode=125)
        self.add(name, host_port, artifact)

    def start(self, name):
        self.calls.append(("start", name))
        if name not in self.units:
            raise CommandFailed(f"No such container: {name}", returncode=1)
        self.units[name]["state"] = UnitState.RUNNING

    def stop(self, name, grace_seconds):
        self.calls.append(("stop", name, grace_seconds))
        if name in self.fail_stop:
            raise CommandFailed(f"docker stop {name} timed out")
        if name in self.units:
            self.units[name]["state"] = UnitState.STOPPED

    def remove(self, name, force=False):
        self.calls.append(("remove", name, force))
        if name in self.fail_remove:
            raise CommandFailed(f"docker rm {name} failed")
        unit = self.units.get(name)
        if unit is None:
            raise CommandFailed(f"No such container: {name}", returncode=1)
        if unit["state"] == UnitState.RUNNING and not force:
            raise CommandFailed(f"You cannot remove a running container {name}", returncode=1)
        del self.units[name]

    def logs(self, name, tail):
        self.calls.append(("logs", name, tail))
        if self.fail_logs:
            raise CommandFailed(f"Command timed out after 60s: docker logs {name}")
        return self.unit_logs.get(name, f"{name}: listening on :3402")

    def prune_images(self):
        self.calls.append(("prune",))
        if self.fail_prune:
            raise CommandFailed("docker image prune failed")


class FakeCaddy(CaddyAdminClient):
    """Caddy admin API held in memory; cutover logic is the real client's."""

    def __init__(self, document=None):
        super().__init__("http://caddy.test:2019")
        self.document = document if document is not None else caddy_config()
        self.loads = []
        self.fail_read = False
        self.fail_apply = False

    def read_config(self):
        if self.fail_read:
            raise ConfigUnreachable("Cannot reach Caddy admin API at http://caddy.test:2019")
        return ConfigDocument(body=copy.deepcopy(self.document), etag=None)

    def apply_config(self, document, etag=None):
        if self.fail_apply:
            raise ConfigApplyFailed("Caddy load failed 400: invalid config")
        self.loads.append(document)
        self.document = copy.deepcopy(document)


class FakeProber:
    """Healthy iff a running unit is bound to the probed port and the port is not marked sick."""

    def __init__(self, runtime: FakeRuntime):
        self.runtime = runtime
        self.sick_ports = set()
        self.calls = []

    def probe(self, address, timeout, interval):
        self.calls.append((address, timeout, interval))
        port = int(address.rsplit(":", 1)[1])
        return port not in self.sick_ports and bool(self.runtime.running_on(port))


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        STATE_PATH=str(tmp_path / "state.json"),
        LOG_FILE="",
        METRICS_TEXTFILE="",
        HEALTH_TIMEOUT=60,
        ROLLBACK_HEALTH_TIMEOUT=30,
        HEALTH_INTERVAL=2,
        STOP_GRACE_SECONDS=10,
        PRUNE_IMAGES=True,
    )


@pytest.fixture
def registry():
    return SlotRegistry(port_a=3402, port_b=3403, unit_prefix="x402-gateway")


@pytest.fixture
def runtime():
    rt = FakeRuntime()
    rt.add("x402-gateway-a", 3402, "gateway:aaa111")
    return rt


@pytest.fixture
def caddy():
    return FakeCaddy()


@pytest.fixture
def prober(runtime):
    return FakeProber(runtime)


@pytest.fixture
def store(test_settings, registry):
    return StateStore(test_settings.STATE_PATH, registry)


@pytest.fixture
def ctx(runtime, caddy, prober, store):
    return Context(runtime=runtime, proxy=caddy, prober=prober, store=store, log_tail=50)


@pytest.fixture
def orchestrator(ctx, registry, test_settings):
    return DeploymentOrchestrator(ctx, registry, s=test_settings)
