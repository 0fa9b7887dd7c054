"""
Preflight validation for the role-transition protocols.

Each check probes the cluster, raises ValidationError (or a subclass) when
a precondition is unmet, and otherwise returns a PreflightReport holding the
topology the protocol will act on. Nothing here mutates state, so a failed
preflight always leaves the cluster exactly as it was.
"""

import logging
from dataclasses import dataclass, field

from idp_failover.config import Cluster
from idp_failover.database import DatabaseControl
from idp_failover.detector import RoleDetector
from idp_failover.exceptions import (
    ConfigError,
    HostUnreachable,
    PeerStillReachable,
    UnreachablePeer,
    ValidationError,
)
from idp_failover.types import ClusterTopology, Node, NodeId, ReplicationRole

logger = logging.getLogger(__name__)

EMERGENCY_FAILOVER = "emergency-failover"
PLANNED_SWITCHOVER = "planned-switchover"
REINSTATEMENT = "reinstate"


@dataclass
class PreflightReport:
    """
    Result of a passed preflight.

    Attributes:
        topology: Roles observed during preflight
        peer_reachable: Whether the peer (or named primary) answered
        warnings: Non-fatal findings to surface in the run summary
    """

    topology: ClusterTopology
    peer_reachable: bool
    warnings: list[str] = field(default_factory=list)


class PreflightValidator:
    """Protocol-specific precondition checks."""

    def __init__(self, cluster: Cluster, detector: RoleDetector, db: DatabaseControl):
        self.cluster = cluster
        self.detector = detector
        self.db = db

    async def is_healthy(self, node: Node) -> bool:
        """True when the node's database answers ``pg_isready``."""
        try:
            result = await self.db.is_ready(node)
        except HostUnreachable as e:
            logger.info("Readiness probe of %s failed: %s", node.id, e)
            return False
        return result.ok

    async def emergency_failover(self, force: bool = False) -> PreflightReport:
        local, peer = self.cluster.local, self.cluster.peer

        local_role = await self.detector.detect(local)
        if local_role != ReplicationRole.STANDBY:
            raise ValidationError(
                EMERGENCY_FAILOVER,
                [f"local node {local.id} is {local_role.value}, not standby; cannot fail over from here"],
            )

        warnings: list[str] = []
        peer_reachable = await self.is_healthy(peer)
        if peer_reachable:
            if not force:
                raise PeerStillReachable(EMERGENCY_FAILOVER, peer.id)
            warnings.append(f"peer {peer.id} is reachable but --force was given; continuing")
            peer_role = await self.detector.detect(peer)
        else:
            peer_role = ReplicationRole.UNREACHABLE

        topology = ClusterTopology({local.id: local_role, peer.id: peer_role})
        return PreflightReport(topology=topology, peer_reachable=peer_reachable, warnings=warnings)

    async def planned_switchover(self) -> PreflightReport:
        local, peer = self.cluster.local, self.cluster.peer

        if not await self.is_healthy(local):
            raise ValidationError(PLANNED_SWITCHOVER, [f"local database on {local.id} is not healthy"])
        if not await self.is_healthy(peer):
            raise UnreachablePeer(PLANNED_SWITCHOVER, peer.id)

        topology = await self.detector.probe([local, peer])
        local_role, peer_role = topology.role_of(local.id), topology.role_of(peer.id)
        roles = {local_role, peer_role}
        if roles != {ReplicationRole.PRIMARY, ReplicationRole.STANDBY}:
            raise ValidationError(
                PLANNED_SWITCHOVER,
                [f"expected one primary and one standby, observed {topology.describe()}"],
            )
        if local_role != ReplicationRole.STANDBY:
            raise ValidationError(
                PLANNED_SWITCHOVER,
                [f"switchover must be initiated from the standby; run it on {peer.id}"],
            )
        return PreflightReport(topology=topology, peer_reachable=True)

    async def reinstatement(self, target_id: NodeId) -> PreflightReport:
        local = self.cluster.local
        if target_id == local.id:
            raise ValidationError(
                REINSTATEMENT, [f"self-reference: {target_id} is the local node"]
            )
        try:
            target = self.cluster.node(target_id)
        except ConfigError as e:
            raise ValidationError(REINSTATEMENT, [str(e)]) from e

        if not await self.is_healthy(target):
            raise UnreachablePeer(REINSTATEMENT, target.id)
        target_role = await self.detector.detect(target)
        if target_role != ReplicationRole.PRIMARY:
            raise ValidationError(
                REINSTATEMENT, [f"{target.id} is {target_role.value}, not primary"]
            )

        warnings: list[str] = []
        local_role = await self.detector.detect(local)
        if local_role == ReplicationRole.PRIMARY:
            warnings.append(
                f"local node {local.id} also reports primary; it will be rebuilt from {target.id}"
            )
        topology = ClusterTopology({target.id: target_role, local.id: local_role})
        return PreflightReport(topology=topology, peer_reachable=True, warnings=warnings)
