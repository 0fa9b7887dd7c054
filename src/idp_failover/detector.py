"""
Node role detection.

RoleDetector probes ``pg_is_in_recovery()`` on a node and classifies the
answer. It never mutates anything and never caches: every call is a fresh
probe, so a topology is only as old as the protocol run that built it.

Classification:
- ``t`` -> Standby, ``f`` -> Primary
- transport failure, timeout, refused connection -> Unreachable
- any other answer -> Error
"""

import asyncio
import logging
import math
from typing import Awaitable, Callable, Iterable

from idp_failover.database import DatabaseControl
from idp_failover.exceptions import HostUnreachable
from idp_failover.types import ClusterTopology, Node, ReplicationRole

logger = logging.getLogger(__name__)

# stderr fragments meaning "nothing is listening" rather than "bad answer"
_REFUSED_MARKERS = (
    "could not connect",
    "connection refused",
    "no such file or directory",
    "is the server running",
    "instance not found",
    "no such container",
)

Sleep = Callable[[float], Awaitable[None]]


class RoleDetector:
    """Read-only probe of a node's replication role."""

    def __init__(self, db: DatabaseControl, sleep: Sleep = asyncio.sleep):
        self.db = db
        self._sleep = sleep

    async def detect(self, node: Node) -> ReplicationRole:
        try:
            result = await self.db.query_recovery(node)
        except HostUnreachable as e:
            logger.info("Role probe of %s failed: %s", node.id, e)
            return ReplicationRole.UNREACHABLE

        if not result.ok:
            stderr = result.stderr.lower()
            if any(marker in stderr for marker in _REFUSED_MARKERS):
                logger.info("Database on %s refused connection", node.id)
                return ReplicationRole.UNREACHABLE
            logger.warning("Role probe of %s returned %s", node.id, result.summary())
            return ReplicationRole.ERROR

        answer = result.stdout.strip()
        if answer == "t":
            return ReplicationRole.STANDBY
        if answer == "f":
            return ReplicationRole.PRIMARY
        logger.warning("Unexpected role probe output from %s: %r", node.id, answer)
        return ReplicationRole.ERROR

    async def probe(self, nodes: Iterable[Node]) -> ClusterTopology:
        """Probe each node in turn and return a fresh topology."""
        roles = {}
        for node in nodes:
            roles[node.id] = await self.detect(node)
        return ClusterTopology(roles)

    async def wait_for_role(
        self,
        node: Node,
        target: ReplicationRole,
        interval: float,
        max_wait: float,
    ) -> ReplicationRole:
        """Poll until ``node`` reports ``target`` or ``max_wait`` elapses.

        Returns:
            The last observed role (equal to ``target`` on success)
        """
        attempts = max(1, math.ceil(max_wait / interval)) if interval > 0 else 1
        role = ReplicationRole.UNREACHABLE
        for attempt in range(attempts):
            role = await self.detect(node)
            if role == target:
                return role
            if attempt < attempts - 1:
                await self._sleep(interval)
        return role
