"""
Shared fixtures: an in-memory two-node cluster.

ClusterSim holds the state of both nodes (database role, data, config files,
services) and of both edges (Traefik dynamic config text). FakeRuntime and
FakeTransport interpret the exact commands the components send, so the
orchestrators run end to end without containers or SSH.

Every state change is appended to ``sim.mutations`` as (target, action);
every command is appended to ``sim.calls``.
"""

from dataclasses import dataclass, field
from typing import Mapping, Sequence

import httpx
import pytest
import yaml

from idp_failover.config import ClusterConfig, resolve_cluster
from idp_failover.exceptions import HostUnreachable
from idp_failover.factory import Services, build_services
from idp_failover.remote.transport import CommandResult

FQDN = "{}.outliertechnology.co.uk"
TRAEFIK_PATH = "/srv/security-stack/systems/traefik/dynamic/keycloak.yml"
KC_CONF = "/opt/keycloak/conf/keycloak.conf"
PG_DATA = "/var/lib/postgresql/16/main"
PG_HBA = "/etc/postgresql/16/main/pg_hba.conf"

BASE_HBA = (
    "# TYPE  DATABASE        USER            ADDRESS                 METHOD\n"
    "local   all             postgres                                peer\n"
    "host    all             all             10.10.0.0/24            scram-sha-256\n"
)


def cluster_config_data() -> dict:
    return {
        "ssh_user": "sysadmin",
        "runtime": "lxd",
        "nodes": {
            "idp01": {"fqdn": FQDN.format("idp01"), "peer": "idp02", "ssh_host": "idp001"},
            "idp02": {"fqdn": FQDN.format("idp02"), "peer": "idp01", "ssh_host": "idp002"},
        },
        "edges": [
            {"name": "sec001", "host": "sec001", "config_path": TRAEFIK_PATH},
            {"name": "sec002", "host": "sec002", "config_path": TRAEFIK_PATH},
        ],
        "app": {"readiness_attempts": 3, "readiness_interval": 0},
        "timeouts": {
            "promote_poll_interval": 0.01,
            "promote_max_wait": 0.03,
            "resync_poll_interval": 0.01,
            "resync_max_wait": 0.03,
        },
    }


def traefik_config(*node_ids: str) -> str:
    document = {
        "http": {
            "routers": {
                "keycloak": {
                    "rule": "Host(`idp.outliertechnology.co.uk`)",
                    "service": "keycloak",
                    "entryPoints": ["websecure"],
                }
            },
            "services": {
                "keycloak": {
                    "loadBalancer": {
                        "servers": [{"url": f"http://{FQDN.format(n)}:8080"} for n in node_ids]
                    }
                }
            },
        }
    }
    return yaml.safe_dump(document, sort_keys=False)


@dataclass
class SimNode:
    """One simulated node: a host with a database and an application container."""

    id: str
    ssh_host: str
    address: str
    role: str
    db_host: str
    reachable: bool = True
    db_exists: bool = True
    app_exists: bool = True
    db_running: bool = True
    app_running: bool = True
    data: str | None = None
    standby_signal: bool = False
    auto_conf: str = ""
    hba: str = BASE_HBA
    hba_write_fails: bool = False
    promote_works: bool = True
    stop_fails: bool = False
    basebackup_fails: bool = False
    app_never_ready: bool = False
    last_env: dict = field(default_factory=dict)

    @property
    def fqdn(self) -> str:
        return FQDN.format(self.id)

    def accepts_replication_from(self, address: str) -> bool:
        return any(
            line.split()[:4] == ["host", "replication", "replicator", address]
            for line in self.hba.splitlines()
        )

    @property
    def app_conf(self) -> str:
        return (
            "# Keycloak configuration\n"
            f"db-url=jdbc:postgresql://{self.db_host}/keycloak\n"
            "db-username=keycloak\n"
            "db-password=kc-db-secret\n"
            "health-enabled=true\n"
        )

    @app_conf.setter
    def app_conf(self, text: str) -> None:
        for line in text.splitlines():
            if line.startswith("db-url=jdbc:postgresql://"):
                self.db_host = line[len("db-url=jdbc:postgresql://"):].split("/")[0]


@dataclass
class SimEdge:
    name: str
    text: str
    reachable: bool = True


class ClusterSim:
    """State of both nodes and both edges."""

    def __init__(self) -> None:
        self.nodes = {
            "idp01": SimNode("idp01", "idp001", "10.10.0.11", role="primary",
                             db_host="10.10.0.11", data="cluster-v1"),
            "idp02": SimNode("idp02", "idp002", "10.10.0.12", role="standby",
                             db_host=FQDN.format("idp01"), data="cluster-v1",
                             standby_signal=True),
        }
        self.nodes["idp01"].hba += f"host    replication     replicator      {FQDN.format('idp02')}    scram-sha-256\n"
        self.edges = {
            "sec001": SimEdge("sec001", traefik_config("idp01", "idp02")),
            "sec002": SimEdge("sec002", traefik_config("idp01", "idp02")),
        }
        self.mutations: list[tuple[str, str]] = []
        self.calls: list[tuple[str, tuple[str, ...]]] = []

    def by_ssh_host(self, host: str) -> SimNode:
        return next(n for n in self.nodes.values() if n.ssh_host == host)

    def by_fqdn(self, fqdn: str) -> SimNode | None:
        return next((n for n in self.nodes.values() if n.fqdn == fqdn), None)

    def roles(self) -> dict[str, str]:
        return {n.id: n.role for n in self.nodes.values()}

    def backends(self, edge: str) -> list[str]:
        document = yaml.safe_load(self.edges[edge].text)
        servers = document["http"]["services"]["keycloak"]["loadBalancer"]["servers"]
        return [s["url"] for s in servers]

    def mutated(self, target: str) -> list[str]:
        return [action for t, action in self.mutations if t == target]


def _ok(argv: Sequence[str], stdout: str = "") -> CommandResult:
    return CommandResult(list(argv), 0, stdout, "")


def _fail(argv: Sequence[str], stderr: str, code: int = 1) -> CommandResult:
    return CommandResult(list(argv), code, "", stderr)


class FakeRuntime:
    """ContainerRuntime answering from a ClusterSim, as seen from ``local_id``."""

    def __init__(self, sim: ClusterSim, local_id: str):
        self.sim = sim
        self.local_id = local_id

    def _node(self, host: str | None) -> SimNode:
        node = self.sim.nodes[self.local_id] if host is None else self.sim.by_ssh_host(host)
        if not node.reachable:
            raise HostUnreachable(node.ssh_host, "ssh: connect to host: No route to host")
        return node

    async def exists(self, host: str | None, container: str, *, timeout: float) -> bool:
        node = self._node(host)
        return node.db_exists if container == "postgres-lxc" else node.app_exists

    async def write_file(self, host, container, path, content, *, timeout) -> CommandResult:
        node = self._node(host)
        if path == KC_CONF:
            node.app_conf = content
        elif path.endswith("postgresql.auto.conf"):
            node.auto_conf = content
        elif path == PG_HBA:
            if node.hba_write_fails:
                return _fail([path], f"sh: 1: cannot create {path}: Read-only file system", 2)
            node.hba = content
        self.sim.mutations.append((node.id, f"write {path}"))
        return _ok([path])

    async def exec(
        self,
        host: str | None,
        container: str,
        argv: Sequence[str],
        *,
        timeout: float,
        env: Mapping[str, str] | None = None,
        user: str | None = None,
    ) -> CommandResult:
        node = self._node(host)
        self.sim.calls.append((node.id, tuple(argv)))
        if container == "postgres-lxc":
            if not node.db_exists:
                return _fail(argv, "Error: Instance not found")
            return self._database(node, list(argv), env or {})
        if not node.app_exists:
            return _fail(argv, "Error: Instance not found")
        return self._application(node, list(argv))

    def _database(self, node: SimNode, argv: list[str], env: Mapping[str, str]) -> CommandResult:
        sim = self.sim
        command = argv[0].rsplit("/", 1)[-1]

        if command == "psql":
            if not node.db_running:
                return _fail(argv, "psql: error: connection to server on socket failed: No such file or directory", 2)
            sql = argv[-1]
            if "pg_is_in_recovery" in sql:
                return _ok(argv, "t\n" if node.role == "standby" else "f\n")
            if "pg_last_wal_receive_lsn" in sql:
                return _ok(argv, "0/3000148|0/3000148\n")
            if "pg_stat_replication" in sql:
                followers = [n for n in sim.nodes.values() if n.role == "standby" and n.db_running]
                return _ok(argv, f"{len(followers)}\n")
            if "pg_reload_conf" in sql:
                sim.mutations.append((node.id, "reload"))
                return _ok(argv, "t\n")
            return _fail(argv, "unsupported query")

        if command == "pg_isready":
            if "-h" in argv:
                source = sim.by_fqdn(argv[argv.index("-h") + 1])
                up = source is not None and source.reachable and source.db_running
                sim.mutations.append((node.id, f"probe-source {'ok' if up else 'failed'}"))
                return _ok(argv) if up else _fail(argv, "no response", 2)
            return _ok(argv) if node.db_running else _fail(argv, "no response", 2)

        if command == "pg_ctl":
            if not node.db_running or node.role != "standby":
                return _fail(argv, "pg_ctl: cannot promote server; server is not in standby mode")
            sim.mutations.append((node.id, "promote"))
            if node.promote_works:
                node.role = "primary"
                node.standby_signal = False
            return _ok(argv, "server promoting\n")

        if command == "systemctl":
            action = argv[1]
            if action == "stop":
                sim.mutations.append((node.id, "stop postgresql"))
                if node.stop_fails:
                    return _fail(argv, "Job for postgresql.service failed")
                node.db_running = False
                return _ok(argv)
            if action == "start":
                sim.mutations.append((node.id, "start postgresql"))
                if node.data is None:
                    return _fail(argv, "Job for postgresql.service failed")
                node.db_running = True
                if node.standby_signal:
                    node.role = "standby"
                return _ok(argv)

        if command == "find":
            sim.mutations.append((node.id, "wipe"))
            node.data = None
            node.standby_signal = False
            node.auto_conf = ""
            return _ok(argv)

        if command == "pg_basebackup":
            node.last_env = dict(env)
            source = sim.by_fqdn(argv[argv.index("-h") + 1])
            sim.mutations.append((node.id, "basebackup"))
            if node.basebackup_fails or source is None or not source.db_running:
                return _fail(argv, "pg_basebackup: error: could not connect to server")
            if not source.accepts_replication_from(node.fqdn):
                return _fail(argv, f"FATAL:  no pg_hba.conf entry for replication connection from host \"{node.fqdn}\"")
            node.data = source.data
            node.auto_conf = "# Do not edit this file manually!\n"
            return _ok(argv)

        if command == "cat":
            return _ok(argv, node.hba if argv[1] == PG_HBA else node.auto_conf)

        if command == "touch":
            sim.mutations.append((node.id, "standby.signal"))
            node.standby_signal = True
            return _ok(argv)

        if command == "hostname":
            return _ok(argv, f"{node.address} fd42::11\n")

        return _fail(argv, f"unexpected command {argv}", 127)

    def _application(self, node: SimNode, argv: list[str]) -> CommandResult:
        if argv[0] == "cat":
            return _ok(argv, node.app_conf)
        if argv[:2] == ["systemctl", "stop"]:
            self.sim.mutations.append((node.id, "stop keycloak"))
            node.app_running = False
            return _ok(argv)
        if argv[:2] == ["systemctl", "restart"]:
            self.sim.mutations.append((node.id, "restart keycloak"))
            node.app_running = True
            return _ok(argv)
        if argv[:2] == ["systemctl", "is-active"]:
            return _ok(argv, "active\n" if node.app_running else "inactive\n")
        return _fail(argv, f"unexpected command {argv}", 127)


class FakeTransport:
    """Host transport for the edge hosts of a ClusterSim."""

    def __init__(self, sim: ClusterSim):
        self.sim = sim

    async def run(self, host, argv, *, timeout, input=None) -> CommandResult:
        edge = self.sim.edges[host]
        self.sim.calls.append((host, tuple(argv)))
        if not edge.reachable:
            raise HostUnreachable(host, "ssh: connect to host: Connection timed out")
        if argv[0] == "cat":
            return _ok(argv, edge.text)
        if "tee" in argv:
            edge.text = input
            self.sim.mutations.append((host, "write traefik"))
            return _ok(argv, input)
        return _fail(argv, f"unexpected command {argv}", 127)


def readiness_client(sim: ClusterSim) -> httpx.AsyncClient:
    """HTTP client whose readiness answers follow the simulated applications."""

    def handler(request: httpx.Request) -> httpx.Response:
        node = sim.by_fqdn(request.url.host)
        if node is None or not node.reachable:
            raise httpx.ConnectError("connection refused", request=request)
        if node.app_running and not node.app_never_ready:
            return httpx.Response(200, json={"status": "UP"})
        return httpx.Response(503, json={"status": "DOWN"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def no_sleep(_: float) -> None:
    return None


class ConfirmRecorder:
    """Confirmation capability that records prompts and returns a fixed answer."""

    def __init__(self, answer: bool = True):
        self.answer = answer
        self.prompts: list[str] = []

    def __call__(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        return self.answer


@pytest.fixture
def sim() -> ClusterSim:
    return ClusterSim()


@pytest.fixture
def cluster_config() -> ClusterConfig:
    return ClusterConfig.model_validate(cluster_config_data())


@pytest.fixture
def make_services(sim, cluster_config):
    """Build Services running on the given node against the simulation."""

    def _make(local_id: str, confirm=None) -> Services:
        cluster = resolve_cluster(cluster_config, local_id)
        return build_services(
            cluster,
            confirm=confirm,
            transport=FakeTransport(sim),
            runtime=FakeRuntime(sim, local_id),
            http_client=readiness_client(sim),
            sleep=no_sleep,
        )

    return _make
