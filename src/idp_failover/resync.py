"""
Resynchronization: rebuild a node as Standby of a Primary.

Stages run strictly in order:

    stop -> verify-source -> allow-replication -> wipe -> stream -> configure
         -> start -> verify

The source is probed from the node being rebuilt before the wipe, so the
destructive stages are never reached unless the source answered in this run.
The source's pg_hba.conf is made to accept the rebuilt node's replication
connection before anything is deleted.
Failures before the wipe lose nothing; failures from the wipe onwards leave
the node without usable data and need manual recovery. The final verify
stage only warns: the node is running and may still be catching up.
"""

import logging
from dataclasses import dataclass, field

from idp_failover.config import TimeoutConfig
from idp_failover.database import DatabaseControl
from idp_failover.detector import RoleDetector
from idp_failover.exceptions import (
    Declined,
    HostUnreachable,
    ResyncFailed,
    StandbyNotVerified,
    ValidationError,
)
from idp_failover.remote.transport import CommandResult
from idp_failover.types import Confirm, Node, ReplicationRole

logger = logging.getLogger(__name__)


@dataclass
class ResyncResult:
    """
    Outcome of a successful resync.

    Attributes:
        node_id: Node that was rebuilt
        source_id: Primary it now follows
        role: Role observed after start
        stages: Stages completed, in order
    """

    node_id: str
    source_id: str
    role: ReplicationRole
    stages: list[str] = field(default_factory=list)


class ResyncExecutor:
    """Destructively rebuilds a node from a full physical copy of a Primary."""

    def __init__(
        self,
        db: DatabaseControl,
        detector: RoleDetector,
        timeouts: TimeoutConfig,
        confirm: Confirm | None = None,
    ):
        self.db = db
        self.detector = detector
        self.timeouts = timeouts
        self.confirm = confirm

    async def resync(
        self,
        standby: Node,
        source: Node,
        credential: str,
        confirmed: bool = False,
    ) -> ResyncResult:
        """Rebuild ``standby`` as a follower of ``source``.

        Args:
            standby: Node whose data is replaced
            source: Current primary to copy from
            credential: Replication password, passed to the copy via environment
            confirmed: True when a higher-level protocol already passed its
                confirmation gate

        Raises:
            ValidationError: If standby and source are the same node
            Declined: If confirmation was required and refused
            ResyncFailed: If any stage up to and including start failed
            StandbyNotVerified: If the node started but never reported Standby
        """
        if standby.id == source.id:
            raise ValidationError("resync", [f"self-reference: cannot resync {standby.id} from itself"])
        if not confirmed:
            prompt = (
                f"This will DESTROY all database data on {standby.id} and rebuild it "
                f"from {source.id}. Continue?"
            )
            if self.confirm is None or not self.confirm(prompt):
                raise Declined(f"resync of {standby.id} declined")

        stages: list[str] = []
        wiped = False

        async def run_stage(stage: str, call) -> CommandResult:
            try:
                result = await call
            except HostUnreachable as e:
                raise ResyncFailed(
                    standby.id, stage, str(e), data_lost=wiped,
                    observed={"completed": ",".join(stages) or "-"},
                ) from e
            if not result.ok:
                raise ResyncFailed(
                    standby.id, stage, result.summary(), data_lost=wiped,
                    observed={"completed": ",".join(stages) or "-"},
                )
            stages.append(stage)
            return result

        logger.info("Stopping database on %s", standby.id)
        await run_stage("stop", self.db.stop(standby))

        logger.info("Checking %s can reach %s", standby.id, source.id)
        try:
            await run_stage("verify-source", self.db.can_reach(standby, source))
        except ResyncFailed as e:
            raise ResyncFailed(
                standby.id, "verify-source",
                f"source {source.id} ({source.db_endpoint}) unreachable", data_lost=False,
                observed=e.observed,
            ) from e

        logger.info("Ensuring %s accepts replication from %s", source.id, standby.id)
        await run_stage("allow-replication", self.db.allow_replication(source, standby))

        # Everything from here on is destructive
        wiped = True
        await run_stage("wipe", self.db.wipe(standby))
        await run_stage("stream", self.db.base_backup(standby, source, credential))
        await run_stage("configure", self.db.configure_follower(standby, source))
        await run_stage("start", self.db.start(standby))

        role = await self.detector.wait_for_role(
            standby,
            ReplicationRole.STANDBY,
            interval=self.timeouts.resync_poll_interval,
            max_wait=self.timeouts.resync_max_wait,
        )
        if role != ReplicationRole.STANDBY:
            raise StandbyNotVerified(standby.id, role.value)
        stages.append("verify")
        logger.info("%s is running as standby of %s", standby.id, source.id)
        return ResyncResult(node_id=standby.id, source_id=source.id, role=role, stages=stages)
