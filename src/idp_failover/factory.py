"""Factory for wiring the components of one run.

Builds every component from a resolved Cluster so the CLI and the tests
construct the same graph; tests replace the runtime, transport or HTTP
client with fakes.
"""

import asyncio
from dataclasses import dataclass

import httpx

from idp_failover.config import Cluster
from idp_failover.database import DatabaseControl
from idp_failover.detector import RoleDetector, Sleep
from idp_failover.edge import EdgeMembershipManager
from idp_failover.preflight import PreflightValidator
from idp_failover.promotion import PromotionExecutor
from idp_failover.redirect import AppRedirector
from idp_failover.remote.runtime import ContainerRuntime, DockerRuntime, LxdRuntime
from idp_failover.remote.transport import SSHTransport
from idp_failover.resync import ResyncExecutor
from idp_failover.stack import NodeStack
from idp_failover.types import Confirm


@dataclass
class Services:
    """Everything a protocol needs, built for one cluster view."""

    cluster: Cluster
    db: DatabaseControl
    detector: RoleDetector
    preflight: PreflightValidator
    promotion: PromotionExecutor
    resync: ResyncExecutor
    redirector: AppRedirector
    edges: EdgeMembershipManager
    stack: NodeStack


def create_runtime(cluster: Cluster, transport: SSHTransport) -> ContainerRuntime:
    """Create the container runtime named in the cluster config."""
    if cluster.config.runtime == "docker":
        return DockerRuntime(ssh_user=cluster.config.ssh_user)
    return LxdRuntime(transport)


def build_services(
    cluster: Cluster,
    *,
    confirm: Confirm | None = None,
    transport: SSHTransport | None = None,
    runtime: ContainerRuntime | None = None,
    http_client: httpx.AsyncClient | None = None,
    sleep: Sleep = asyncio.sleep,
) -> Services:
    """Wire all components for ``cluster``.

    Args:
        cluster: Resolved cluster view
        confirm: Confirmation capability for standalone resyncs
        transport: Host transport; defaults to ssh as the configured user
        runtime: Container runtime; defaults to the configured kind
        http_client: Client for readiness probes; one per probe when None
        sleep: Poll delay function

    Returns:
        Services bundle
    """
    config = cluster.config
    if transport is None:
        transport = SSHTransport(user=config.ssh_user, connect_timeout=config.timeouts.connect)
    if runtime is None:
        runtime = create_runtime(cluster, transport)

    db = DatabaseControl(runtime, cluster)
    detector = RoleDetector(db, sleep=sleep)
    return Services(
        cluster=cluster,
        db=db,
        detector=detector,
        preflight=PreflightValidator(cluster, detector, db),
        promotion=PromotionExecutor(db, detector, config.timeouts),
        resync=ResyncExecutor(db, detector, config.timeouts, confirm=confirm),
        redirector=AppRedirector(runtime, cluster, db, client=http_client, sleep=sleep),
        edges=EdgeMembershipManager(transport, config.edges, config.timeouts),
        stack=NodeStack(runtime, cluster),
    )
