"""
Cluster map loading and local-node resolution.

The cluster map replaces per-host lookup tables with one static mapping of
node id to its names and peer, loaded once from YAML and passed by reference
to every component.

Example:
    ```yaml
    ssh_user: sysadmin
    runtime: lxd
    nodes:
      idp01:
        fqdn: idp01.outliertechnology.co.uk
        peer: idp02
        ssh_host: idp001
      idp02:
        fqdn: idp02.outliertechnology.co.uk
        peer: idp01
        ssh_host: idp002
    edges:
      - name: sec001
        host: sec001
        config_path: /srv/security-stack/systems/traefik/dynamic/keycloak.yml
    ```
"""

import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator

from idp_failover.exceptions import ConfigError
from idp_failover.types import Node, NodeId

CONFIG_ENV_VAR = "IDP_FAILOVER_CONFIG"
DEFAULT_CONFIG_PATH = Path("/etc/idp-failover/cluster.yaml")


class NodeConfig(BaseModel):
    """Names and peer of one cluster node."""

    fqdn: str
    peer: NodeId
    ssh_host: str
    aliases: list[str] = Field(default_factory=list)
    local_db_host: str | None = Field(
        default=None,
        description="Database address for the co-located application; detected when unset",
    )
    replication_address: str | None = Field(
        default=None,
        description="Address the peer database sees this node connect from; defaults to fqdn",
    )


class EdgeConfig(BaseModel):
    """One edge proxy instance and its dynamic config file."""

    name: str
    host: str
    config_path: str = "/srv/security-stack/systems/traefik/dynamic/keycloak.yml"
    service: str = Field(default="keycloak", description="Traefik service holding the backends")
    use_sudo: bool = True


class DatabaseConfig(BaseModel):
    """PostgreSQL layout inside the database container."""

    container: str = "postgres-lxc"
    version: str = "16"
    port: int = Field(default=5432, ge=1, le=65535)
    data_dir: str | None = None
    service: str = "postgresql"
    os_user: str = "postgres"
    replication_user: str = "replicator"
    passfile: str | None = Field(
        default=None,
        description="passfile referenced from primary_conninfo; provisioned outside this tool",
    )
    hba_file: str | None = None
    hba_method: str = "scram-sha-256"

    @property
    def data_path(self) -> str:
        return self.data_dir or f"/var/lib/postgresql/{self.version}/main"

    @property
    def bin_dir(self) -> str:
        return f"/usr/lib/postgresql/{self.version}/bin"

    @property
    def hba_path(self) -> str:
        return self.hba_file or f"/etc/postgresql/{self.version}/main/pg_hba.conf"


class AppConfig(BaseModel):
    """Keycloak layout inside the application container."""

    container: str = "keycloak-lxc"
    service: str = "keycloak"
    conf_path: str = "/opt/keycloak/conf/keycloak.conf"
    port: int = Field(default=8080, ge=1, le=65535)
    health_port: int = Field(default=9000, ge=1, le=65535)
    health_path: str = "/health/ready"
    readiness_attempts: int = Field(default=30, ge=1)
    readiness_interval: float = Field(default=2.0, ge=0)


class TimeoutConfig(BaseModel):
    """Per-call timeouts and polling bounds, in seconds."""

    probe: float = Field(default=5.0, description="Read-only role and readiness probes")
    connect: int = Field(default=5, ge=1, description="SSH ConnectTimeout")
    command: float = Field(default=60.0, gt=0, description="Mutating remote calls")
    stream: float = Field(default=3600.0, gt=0, description="Full-copy streaming")
    promote_poll_interval: float = Field(default=1.0, ge=0)
    promote_max_wait: float = Field(default=30.0, gt=0)
    resync_poll_interval: float = Field(default=2.0, ge=0)
    resync_max_wait: float = Field(default=60.0, gt=0)

    @field_validator("probe")
    @classmethod
    def validate_probe(cls, v: float) -> float:
        if not 5.0 <= v <= 10.0:
            raise ValueError(f"Invalid probe timeout: {v}. Must be between 5 and 10 seconds")
        return v


class ClusterConfig(BaseModel):
    """Cluster map YAML schema with validation."""

    ssh_user: str = "sysadmin"
    runtime: Literal["lxd", "docker"] = "lxd"
    nodes: dict[NodeId, NodeConfig]
    edges: list[EdgeConfig] = Field(default_factory=list)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    app: AppConfig = Field(default_factory=AppConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)

    @field_validator("nodes")
    @classmethod
    def validate_nodes(cls, v: dict[NodeId, NodeConfig]) -> dict[NodeId, NodeConfig]:
        if len(v) != 2:
            raise ValueError(f"Exactly two nodes are required, got {len(v)}")
        return v

    @field_validator("edges")
    @classmethod
    def validate_edges(cls, v: list[EdgeConfig]) -> list[EdgeConfig]:
        names = [edge.name for edge in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate edge names: {duplicates}")
        return v

    @model_validator(mode="after")
    def validate_peers(self) -> "ClusterConfig":
        for node_id, node in self.nodes.items():
            if node.peer == node_id:
                raise ValueError(f"Node {node_id} names itself as peer")
            if node.peer not in self.nodes:
                raise ValueError(f"Node {node_id} has unknown peer {node.peer}")
            if self.nodes[node.peer].peer != node_id:
                raise ValueError(f"Peers of {node_id} and {node.peer} are not symmetric")
        return self


def load_cluster_config(path: Path | None = None) -> ClusterConfig:
    """Load and validate the cluster map from YAML.

    Args:
        path: Path to the map. Defaults to $IDP_FAILOVER_CONFIG, then
            /etc/idp-failover/cluster.yaml

    Raises:
        ConfigError: If the file is missing, unreadable or fails validation
    """
    if path is None:
        path = Path(os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH))
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read cluster config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    try:
        return ClusterConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid cluster config {path}: {e}") from e


@dataclass(frozen=True)
class Cluster:
    """
    The resolved cluster as seen from the node the tool runs on.

    Attributes:
        config: Validated cluster map
        local: Node this process runs on
        peer: The other node
    """

    config: ClusterConfig
    local: Node
    peer: Node

    @property
    def nodes(self) -> dict[NodeId, Node]:
        return {self.local.id: self.local, self.peer.id: self.peer}

    def node(self, node_id: NodeId) -> Node:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise ConfigError(
                f"Unknown node: {node_id}. Configured nodes: {sorted(self.nodes)}"
            ) from None

    def host_for(self, node: Node) -> str | None:
        """SSH host to reach ``node``, or None when it is the local node."""
        return None if node.id == self.local.id else node.ssh_host


def _build_node(config: ClusterConfig, node_id: NodeId) -> Node:
    entry = config.nodes[node_id]
    return Node(
        id=node_id,
        fqdn=entry.fqdn,
        ssh_host=entry.ssh_host,
        db_port=config.database.port,
        app_port=config.app.port,
        health_port=config.app.health_port,
        local_db_host=entry.local_db_host,
        replication_address=entry.replication_address,
    )


def resolve_cluster(config: ClusterConfig, node_id: NodeId | None = None) -> Cluster:
    """
    Resolve which configured node this process runs on.

    Args:
        config: Validated cluster map
        node_id: Explicit node id; when None the short hostname is matched
            against node ids, SSH hosts, FQDNs and aliases

    Raises:
        ConfigError: If the node cannot be determined
    """
    if node_id is None:
        hostname = socket.gethostname()
        short = hostname.split(".")[0]
        for candidate, entry in config.nodes.items():
            names = {candidate, entry.ssh_host, entry.fqdn, *entry.aliases}
            if short in names or hostname in names:
                node_id = candidate
                break
        else:
            raise ConfigError(f"Unknown host: {hostname}. Use --node to select a node")
    if node_id not in config.nodes:
        raise ConfigError(f"Unknown node: {node_id}. Configured nodes: {sorted(config.nodes)}")
    local = _build_node(config, node_id)
    peer = _build_node(config, config.nodes[node_id].peer)
    return Cluster(config=config, local=local, peer=peer)
