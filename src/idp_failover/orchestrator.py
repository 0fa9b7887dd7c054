"""
Protocol orchestrators for role transitions.

Each protocol is a small state machine:

    Init -> PreflightOK -> Confirmed -> <mutating steps> -> Complete

with early exits at preflight (aborted_at_preflight), at the confirmation
gate (declined) or before any step in dry-run mode (dry_run). Secrets are
acquired only once the gate has passed, so a refused or declined run never
asks for them. There is no
automatic rollback: when a step fails the remaining steps are marked
not_run and the run ends in partial_failure with the failing step and the
observed values recorded.

The ClusterTopology is threaded through the steps as a value: each step
receives the current topology and returns the next one.

Protocols:
- EmergencyFailover: remove peer from edges, stop peer (best effort),
  promote self, redirect own application, verify
- PlannedSwitchover: promote self, resync old primary from self, redirect
  both applications, verify; edge membership untouched
- Reinstatement: stop own services, resync self from the named primary,
  redirect own application, re-add self to edges, verify
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

from idp_failover.exceptions import (
    HostUnreachable,
    MutationFailure,
    PartialApplication,
    StepWarning,
    TopologyViolation,
    ValidationError,
)
from idp_failover.factory import Services
from idp_failover.preflight import (
    EMERGENCY_FAILOVER,
    PLANNED_SWITCHOVER,
    REINSTATEMENT,
    PreflightReport,
)
from idp_failover.types import (
    ClusterTopology,
    Confirm,
    CredentialSource,
    NodeId,
    ProtocolRun,
    ReplicationRole,
    RunOutcome,
    StepRecord,
    StepStatus,
)

logger = logging.getLogger(__name__)


class StepSkipped(Exception):
    """Raised by a step that had nothing to do; the message says why."""


@dataclass
class StepResult:
    """Topology after a step plus an optional detail line for the summary."""

    topology: ClusterTopology
    detail: str | None = None


StepAction = Callable[[ClusterTopology], Awaitable[StepResult]]


@dataclass
class Step:
    """
    One planned mutation.

    Attributes:
        name: Stable identifier shown in the summary
        description: What the step will do, in operator terms
        action: Coroutine function taking and returning the topology
    """

    name: str
    description: str
    action: StepAction


class RoleTransition:
    """Base class running preflight, confirmation and steps for a protocol."""

    name = "role-transition"

    def __init__(self, services: Services, confirm: Confirm, dry_run: bool = False):
        self.services = services
        self.cluster = services.cluster
        self.confirm = confirm
        self.dry_run = dry_run

    async def preflight(self) -> PreflightReport:
        raise NotImplementedError

    def plan(self, report: PreflightReport) -> list[Step]:
        raise NotImplementedError

    def confirmation_prompt(self, report: PreflightReport) -> str:
        raise NotImplementedError

    def acquire_secrets(self) -> None:
        """Called once between confirmation and the first step."""

    def next_steps(self, run: ProtocolRun) -> list[str]:
        return []

    async def verify_topology(self, topology: ClusterTopology) -> StepResult:
        """Probe both nodes; anything but exactly one Primary is fatal."""
        observed = await self.services.detector.probe([self.cluster.local, self.cluster.peer])
        if not observed.has_single_primary:
            raise TopologyViolation(self.cluster.local.id, observed.as_dict())
        return StepResult(observed, observed.describe())

    async def run(self) -> ProtocolRun:
        """Execute the protocol and return its run record.

        Never raises for protocol-level failures; the outcome, error and
        step statuses in the returned ProtocolRun describe what happened.
        """
        run = ProtocolRun(
            protocol=self.name, local_node=self.cluster.local.id, dry_run=self.dry_run
        )
        logger.info("Starting %s on %s", self.name, self.cluster.local.id)

        try:
            report = await self.preflight()
        except ValidationError as e:
            logger.error("Preflight failed: %s", e)
            run.error = str(e)
            return self._finish(run, RunOutcome.ABORTED_AT_PREFLIGHT)

        run.topology_before = report.topology.as_dict()
        run.warnings.extend(report.warnings)
        for warning in report.warnings:
            logger.warning(warning)

        steps = self.plan(report)
        run.steps = [StepRecord(name=s.name, description=s.description) for s in steps]

        if self.dry_run:
            for record in run.steps:
                record.status = StepStatus.PLANNED
            return self._finish(run, RunOutcome.DRY_RUN)

        if not self.confirm(self.confirmation_prompt(report)):
            logger.info("Operator declined %s", self.name)
            for record in run.steps:
                record.status = StepStatus.NOT_RUN
            return self._finish(run, RunOutcome.DECLINED)
        run.confirmed = True
        self.acquire_secrets()

        topology = report.topology
        for index, (step, record) in enumerate(zip(steps, run.steps)):
            run.current_step = step.name
            record.status = StepStatus.RUNNING
            record.started_at = datetime.now()
            logger.info("[%d/%d] %s", index + 1, len(steps), step.description)
            try:
                result = await step.action(topology)
            except StepSkipped as e:
                record.status = StepStatus.SKIPPED
                record.detail = str(e)
                logger.info("Skipped %s: %s", step.name, e)
            except StepWarning as e:
                record.status = StepStatus.WARNED
                record.detail = str(e)
                run.warnings.append(f"{step.name}: {e}")
                if isinstance(e, PartialApplication):
                    run.reconciliation.append(str(e))
                logger.warning("%s: %s", step.name, e)
            except (MutationFailure, ValidationError, HostUnreachable) as e:
                record.status = StepStatus.FAILED
                record.detail = str(e)
                record.finished_at = datetime.now()
                run.error = str(e)
                if isinstance(e, MutationFailure):
                    run.observed = dict(e.observed)
                for remaining in run.steps[index + 1:]:
                    remaining.status = StepStatus.NOT_RUN
                logger.error("Step %s failed: %s", step.name, e)
                run.topology_after = topology.as_dict()
                return self._finish(run, RunOutcome.PARTIAL_FAILURE)
            else:
                topology = result.topology
                record.status = StepStatus.COMPLETED
                record.detail = result.detail
            record.finished_at = datetime.now()

        run.topology_after = topology.as_dict()
        return self._finish(run, RunOutcome.COMPLETE)

    def _finish(self, run: ProtocolRun, outcome: RunOutcome) -> ProtocolRun:
        run.outcome = outcome
        run.finished_at = datetime.now()
        run.next_steps = self.next_steps(run)
        logger.info("%s finished: %s", self.name, outcome.value)
        return run

    def _failure_hints(self, run: ProtocolRun) -> list[str]:
        completed = ", ".join(run.completed_steps) or "none"
        return [
            f"Completed steps: {completed}. Failed step: {run.current_step}.",
            "Nothing was rolled back; inspect the cluster with 'idp-failover status' "
            "and finish the remaining steps by hand.",
        ]


class EmergencyFailover(RoleTransition):
    """Fail over to the local Standby when the Primary is believed dead."""

    name = EMERGENCY_FAILOVER

    def __init__(self, services: Services, confirm: Confirm, force: bool = False, dry_run: bool = False):
        super().__init__(services, confirm, dry_run=dry_run)
        self.force = force

    async def preflight(self) -> PreflightReport:
        return await self.services.preflight.emergency_failover(force=self.force)

    def confirmation_prompt(self, report: PreflightReport) -> str:
        local, peer = self.cluster.local, self.cluster.peer
        return (
            f"This will promote {local.id} to PRIMARY and remove {peer.id} "
            f"from all edges. Proceed?"
        )

    def plan(self, report: PreflightReport) -> list[Step]:
        local, peer = self.cluster.local, self.cluster.peer
        s = self.services

        async def remove_peer(topology: ClusterTopology) -> StepResult:
            result = (await s.edges.remove_backend(peer)).check()
            return StepResult(topology, f"removed on {len(result.applied)}, unchanged on {len(result.unchanged)}")

        async def stop_peer(topology: ClusterTopology) -> StepResult:
            if not report.peer_reachable:
                raise StepSkipped(f"{peer.id} unreachable; stop its services by hand once it is back")
            warnings = await s.stack.stop(peer)
            if warnings:
                raise StepWarning("; ".join(warnings))
            return StepResult(topology.with_role(peer.id, ReplicationRole.UNREACHABLE), "services stopped")

        async def promote_local(topology: ClusterTopology) -> StepResult:
            role = await s.promotion.promote(local)
            return StepResult(topology.with_role(local.id, role), f"{local.id} is primary")

        async def redirect_local(topology: ClusterTopology) -> StepResult:
            target = await s.redirector.resolve_target(local, local)
            url = await s.redirector.redirect(local, target)
            return StepResult(topology, url)

        return [
            Step("remove-peer-from-edges", f"Remove {peer.id} from all edges", remove_peer),
            Step("stop-peer-services", f"Stop services on {peer.id} (best effort)", stop_peer),
            Step("promote-local", f"Promote {local.id} to primary", promote_local),
            Step("redirect-local-app", f"Point the {local.id} application at its local database", redirect_local),
            Step("verify-topology", "Verify exactly one primary", self.verify_topology),
        ]

    def next_steps(self, run: ProtocolRun) -> list[str]:
        local, peer = self.cluster.local, self.cluster.peer
        if run.outcome == RunOutcome.ABORTED_AT_PREFLIGHT and "still reachable" in (run.error or ""):
            return [
                f"{peer.id} still answers: use 'idp-failover planned-switchover' on {local.id}, "
                "or add --force if it must be fenced anyway."
            ]
        if run.outcome == RunOutcome.PARTIAL_FAILURE:
            return self._failure_hints(run)
        if run.outcome != RunOutcome.COMPLETE:
            return []
        hints = [f"Verify the application through the edges ({local.app_endpoint} is now the only backend)."]
        if run.step("stop-peer-services").status == StepStatus.SKIPPED:
            hints.append(f"{peer.id} was not stopped; it may still believe it is primary. Stop it before it rejoins.")
        hints.append(
            f"When {peer.id} is repaired, run on {peer.ssh_host}: "
            f"idp-failover reinstate --primary {local.id}"
        )
        return hints


class PlannedSwitchover(RoleTransition):
    """Swap roles between a healthy Primary and the local Standby."""

    name = PLANNED_SWITCHOVER

    def __init__(
        self, services: Services, confirm: Confirm, credential: CredentialSource, dry_run: bool = False
    ):
        super().__init__(services, confirm, dry_run=dry_run)
        self.credential_source = credential
        self.credential = ""

    def acquire_secrets(self) -> None:
        self.credential = self.credential_source()

    async def preflight(self) -> PreflightReport:
        return await self.services.preflight.planned_switchover()

    def confirmation_prompt(self, report: PreflightReport) -> str:
        local, peer = self.cluster.local, self.cluster.peer
        return (
            f"Current: PRIMARY={peer.id} STANDBY={local.id}. "
            f"After: PRIMARY={local.id} STANDBY={peer.id}. "
            f"All database data on {peer.id} will be DESTROYED and re-copied. Proceed?"
        )

    def plan(self, report: PreflightReport) -> list[Step]:
        local, peer = self.cluster.local, self.cluster.peer
        s = self.services

        async def promote_local(topology: ClusterTopology) -> StepResult:
            role = await s.promotion.promote(local)
            return StepResult(topology.with_role(local.id, role), f"{local.id} is primary")

        async def resync_peer(topology: ClusterTopology) -> StepResult:
            result = await s.resync.resync(peer, local, self.credential, confirmed=True)
            return StepResult(topology.with_role(peer.id, result.role), f"{peer.id} follows {local.id}")

        async def redirect_local(topology: ClusterTopology) -> StepResult:
            target = await s.redirector.resolve_target(local, local)
            return StepResult(topology, await s.redirector.redirect(local, target))

        async def redirect_peer(topology: ClusterTopology) -> StepResult:
            target = await s.redirector.resolve_target(peer, local)
            return StepResult(topology, await s.redirector.redirect(peer, target))

        return [
            Step("promote-local", f"Promote {local.id} to primary", promote_local),
            Step("resync-peer", f"Rebuild {peer.id} as standby of {local.id}", resync_peer),
            Step("redirect-local-app", f"Point the {local.id} application at its local database", redirect_local),
            Step("redirect-peer-app", f"Point the {peer.id} application at {local.id}", redirect_peer),
            Step("verify-topology", "Verify exactly one primary", self.verify_topology),
        ]

    def next_steps(self, run: ProtocolRun) -> list[str]:
        if run.outcome == RunOutcome.PARTIAL_FAILURE:
            return self._failure_hints(run)
        if run.outcome == RunOutcome.COMPLETE:
            return [
                "Both nodes remain registered on all edges; both applications use "
                f"the database on {self.cluster.local.id}.",
                f"To switch back, run planned-switchover on {self.cluster.peer.id}.",
            ]
        return []


class Reinstatement(RoleTransition):
    """Bring the local node back as Standby of the named Primary."""

    name = REINSTATEMENT

    def __init__(
        self,
        services: Services,
        confirm: Confirm,
        primary_id: NodeId,
        credential: CredentialSource,
        dry_run: bool = False,
    ):
        super().__init__(services, confirm, dry_run=dry_run)
        self.primary_id = primary_id
        self.credential_source = credential
        self.credential = ""

    def acquire_secrets(self) -> None:
        self.credential = self.credential_source()

    async def preflight(self) -> PreflightReport:
        return await self.services.preflight.reinstatement(self.primary_id)

    def confirmation_prompt(self, report: PreflightReport) -> str:
        local = self.cluster.local
        return (
            f"All database data on {local.id} will be DESTROYED and rebuilt from "
            f"{self.primary_id}, then {local.id} is re-added to all edges. Proceed?"
        )

    def plan(self, report: PreflightReport) -> list[Step]:
        local = self.cluster.local
        primary = self.cluster.node(self.primary_id)
        s = self.services

        async def stop_local(topology: ClusterTopology) -> StepResult:
            warnings = await s.stack.stop(local)
            if warnings:
                raise StepWarning("; ".join(warnings))
            return StepResult(topology.with_role(local.id, ReplicationRole.UNREACHABLE), "services stopped")

        async def resync_local(topology: ClusterTopology) -> StepResult:
            result = await s.resync.resync(local, primary, self.credential, confirmed=True)
            return StepResult(topology.with_role(local.id, result.role), f"{local.id} follows {primary.id}")

        async def redirect_local(topology: ClusterTopology) -> StepResult:
            target = await s.redirector.resolve_target(local, primary)
            return StepResult(topology, await s.redirector.redirect(local, target))

        async def add_local(topology: ClusterTopology) -> StepResult:
            result = (await s.edges.add_backend(local)).check()
            return StepResult(topology, f"added on {len(result.applied)}, unchanged on {len(result.unchanged)}")

        return [
            Step("stop-local-services", f"Stop services on {local.id}", stop_local),
            Step("resync-local", f"Rebuild {local.id} as standby of {primary.id}", resync_local),
            Step("redirect-local-app", f"Point the {local.id} application at {primary.id}", redirect_local),
            Step("add-local-to-edges", f"Add {local.id} to all edges", add_local),
            Step("verify-topology", "Verify exactly one primary", self.verify_topology),
        ]

    def next_steps(self, run: ProtocolRun) -> list[str]:
        if run.outcome == RunOutcome.PARTIAL_FAILURE:
            return self._failure_hints(run)
        if run.outcome == RunOutcome.COMPLETE:
            return [
                "Check replication with 'idp-failover status' on "
                f"{self.primary_id} (one attached standby expected)."
            ]
        return []
