"""Promotion of a Standby to Primary."""

import logging

from idp_failover.config import TimeoutConfig
from idp_failover.database import DatabaseControl
from idp_failover.detector import RoleDetector
from idp_failover.exceptions import HostUnreachable, PromotionFailed, ValidationError
from idp_failover.types import Node, ReplicationRole

logger = logging.getLogger(__name__)


class PromotionExecutor:
    """Issues ``pg_ctl promote`` and waits for the node to report Primary.

    A promotion that is not observed in time is fatal and never retried:
    whether the first attempt took effect is unknown, and promoting again on
    that ambiguity is unsafe.
    """

    def __init__(self, db: DatabaseControl, detector: RoleDetector, timeouts: TimeoutConfig):
        self.db = db
        self.detector = detector
        self.timeouts = timeouts

    async def promote(self, node: Node) -> ReplicationRole:
        """Promote ``node``.

        Returns:
            ReplicationRole.PRIMARY

        Raises:
            ValidationError: If the node is not currently a standby
            PromotionFailed: If the command failed or Primary was not observed
        """
        role = await self.detector.detect(node)
        if role != ReplicationRole.STANDBY:
            raise ValidationError("promote", [f"{node.id} is {role.value}, not standby; cannot promote"])

        logger.info("Promoting %s to primary", node.id)
        try:
            result = await self.db.promote(node)
        except HostUnreachable as e:
            raise PromotionFailed(node.id, str(e)) from e
        if not result.ok:
            raise PromotionFailed(node.id, f"pg_ctl promote {result.summary()}")

        observed = await self.detector.wait_for_role(
            node,
            ReplicationRole.PRIMARY,
            interval=self.timeouts.promote_poll_interval,
            max_wait=self.timeouts.promote_max_wait,
        )
        if observed != ReplicationRole.PRIMARY:
            raise PromotionFailed(
                node.id,
                f"not observed as primary within {self.timeouts.promote_max_wait:g}s",
                observed={"role": observed.value},
            )
        logger.info("%s is now primary", node.id)
        return observed
