"""Service stop and state for the database and application on one node.

Stopping is best effort: each container is checked for existence before its
service is declared stopped, and problems come back as warning strings
rather than exceptions so a half-dead node can still be taken down.
"""

import logging

from idp_failover.config import Cluster
from idp_failover.exceptions import HostUnreachable
from idp_failover.remote.runtime import ContainerRuntime
from idp_failover.types import Node

logger = logging.getLogger(__name__)


class NodeStack:
    """Application and database services of a node, stopped app-first."""

    def __init__(self, runtime: ContainerRuntime, cluster: Cluster):
        self.runtime = runtime
        self.cluster = cluster
        self.timeouts = cluster.config.timeouts

    def _services(self) -> list[tuple[str, str, str]]:
        db = self.cluster.config.database
        app = self.cluster.config.app
        # Application first so it never writes to a database that is going away
        return [("application", app.container, app.service), ("database", db.container, db.service)]

    async def stop(self, node: Node) -> list[str]:
        """Stop the application then the database on ``node``.

        Returns:
            Warnings for containers that were missing, services that did not
            stop cleanly, or a host that could not be reached
        """
        host = self.cluster.host_for(node)
        warnings: list[str] = []
        for label, container, service in self._services():
            try:
                if not await self.runtime.exists(host, container, timeout=self.timeouts.probe):
                    warnings.append(f"{node.id}: {label} container {container} not found")
                    continue
                result = await self.runtime.exec(
                    host, container, ["systemctl", "stop", service], timeout=self.timeouts.command
                )
            except HostUnreachable as e:
                warnings.append(f"{node.id}: could not stop {label}: {e}")
                continue
            if result.ok:
                logger.info("Stopped %s on %s", service, node.id)
            else:
                warnings.append(f"{node.id}: {service} did not stop cleanly ({result.summary()})")
        for warning in warnings:
            logger.warning(warning)
        return warnings

    async def app_state(self, node: Node) -> str:
        """``active``/``inactive``/... from systemd, or ``container-missing``."""
        host = self.cluster.host_for(node)
        app = self.cluster.config.app
        if not await self.runtime.exists(host, app.container, timeout=self.timeouts.probe):
            return "container-missing"
        result = await self.runtime.exec(
            host, app.container, ["systemctl", "is-active", app.service], timeout=self.timeouts.probe
        )
        return result.stdout.strip() or "unknown"
