"""Read-only status report for both nodes and every edge.

Mirrors what an operator checks before choosing a protocol: whether each
database container exists and answers, its role and replication progress,
the application state and the database it points at, and which edges
advertise which backends.
"""

from pydantic import BaseModel, Field

from idp_failover.exceptions import HostUnreachable
from idp_failover.factory import Services
from idp_failover.types import Node, ReplicationRole


class NodeStatus(BaseModel):
    """Observed state of one node."""

    node: str
    fqdn: str
    local: bool = False
    database: str = Field(description="running, stopped, container-missing or unreachable")
    role: ReplicationRole = ReplicationRole.UNREACHABLE
    replication: str | None = None
    application: str = "unknown"
    db_url: str | None = None


class EdgeStatus(BaseModel):
    """Backends advertised by one edge."""

    name: str
    backends: list[str] = Field(default_factory=list)
    error: str | None = None


class ClusterStatus(BaseModel):
    nodes: list[NodeStatus]
    edges: list[EdgeStatus]


async def _node_status(services: Services, node: Node) -> NodeStatus:
    status = NodeStatus(
        node=node.id,
        fqdn=node.fqdn,
        local=node.id == services.cluster.local.id,
        database="unreachable",
    )
    try:
        if not await services.db.exists(node):
            status.database = "container-missing"
        elif (await services.db.is_ready(node)).ok:
            status.database = "running"
            status.role = await services.detector.detect(node)
            if status.role in (ReplicationRole.PRIMARY, ReplicationRole.STANDBY):
                status.replication = await services.db.replication_detail(
                    node, standby=status.role == ReplicationRole.STANDBY
                )
        else:
            status.database = "stopped"

        status.application = await services.stack.app_state(node)
        if status.application != "container-missing":
            status.db_url = await services.redirector.read_db_url(node)
    except HostUnreachable:
        status.application = "unreachable"
    return status


async def collect_status(services: Services) -> ClusterStatus:
    """Probe both nodes and read membership from every edge."""
    cluster = services.cluster
    nodes = [await _node_status(services, node) for node in (cluster.local, cluster.peer)]
    edges = [
        EdgeStatus(name=view.name, backends=view.backends, error=view.error)
        for view in await services.edges.list_backends()
    ]
    return ClusterStatus(nodes=nodes, edges=edges)
