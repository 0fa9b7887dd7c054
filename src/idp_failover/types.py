"""
Data types for identity-provider role transitions.

This module defines the structures every component passes around:
- ReplicationRole: Probed database role of a node
- Node: Static identity and endpoints of one cluster member
- ClusterTopology: Immutable node-id -> role snapshot, threaded explicitly
- RunOutcome / StepStatus: Lifecycle enums for a protocol run
- StepRecord / ProtocolRun: Ephemeral, never-persisted run summary

Per project patterns:
- Use str enum for JSON serialization compatibility
- Plain dataclasses for value types, Pydantic BaseModel for records
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Callable, Mapping

from pydantic import BaseModel, Field, computed_field


NodeId = str
"""Short node identifier, e.g. "idp01"."""

Confirm = Callable[[str], bool]
"""Operator confirmation capability: shown a prompt, returns True to proceed."""

CredentialSource = Callable[[], str]
"""Returns the replication password; called at most once, after confirmation."""


class ReplicationRole(str, Enum):
    """
    Database replication role as observed by a probe.

    Roles are never cached beyond one protocol run.
    """

    PRIMARY = "primary"
    """Accepts writes and serves as the replication source."""

    STANDBY = "standby"
    """Read-only, continuously applying a primary's change log."""

    UNREACHABLE = "unreachable"
    """Probe timed out or the host/database refused the connection."""

    ERROR = "error"
    """Probe answered, but with something that is not a role."""


@dataclass(frozen=True)
class Node:
    """
    One member of the two-node cluster.

    Attributes:
        id: Short identifier used on the command line (e.g. "idp01").
        fqdn: Fully-qualified name used by peers and edges.
        ssh_host: Host name used for SSH from the other node (e.g. "idp001").
        db_port: PostgreSQL port reachable on ``fqdn``.
        app_port: Application HTTP port registered with the edges.
        health_port: Application management port serving the readiness probe.
        local_db_host: Address the co-located application uses to reach the
            local database, or None to detect the container address.
        replication_address: Address the other node's database sees this
            node connect from, or None to use ``fqdn``.
    """

    id: NodeId
    fqdn: str
    ssh_host: str
    db_port: int = 5432
    app_port: int = 8080
    health_port: int = 9000
    local_db_host: str | None = None
    replication_address: str | None = None

    @property
    def db_endpoint(self) -> str:
        """Database endpoint in ``host:port`` form."""
        return f"{self.fqdn}:{self.db_port}"

    @property
    def app_endpoint(self) -> str:
        """Backend URL advertised to the edge proxies."""
        return f"http://{self.fqdn}:{self.app_port}"

    @property
    def replication_client(self) -> str:
        """Address a primary sees this node's replication connections come from."""
        return self.replication_address or self.fqdn


@dataclass(frozen=True)
class ClusterTopology:
    """
    Snapshot of the probed role of each node.

    Values are immutable: transitions produce a new topology through
    ``with_role`` so the current view is always an explicit argument or
    return value, never shared state.

    Attributes:
        roles: Mapping of node id to its observed role.
    """

    roles: Mapping[NodeId, ReplicationRole] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "roles", MappingProxyType(dict(self.roles)))

    def role_of(self, node_id: NodeId) -> ReplicationRole:
        return self.roles.get(node_id, ReplicationRole.UNREACHABLE)

    def with_role(self, node_id: NodeId, role: ReplicationRole) -> "ClusterTopology":
        """Return a copy with ``node_id`` set to ``role``."""
        roles = dict(self.roles)
        roles[node_id] = role
        return ClusterTopology(roles)

    @property
    def primaries(self) -> list[NodeId]:
        return sorted(n for n, r in self.roles.items() if r == ReplicationRole.PRIMARY)

    @property
    def has_single_primary(self) -> bool:
        """True when exactly one node is Primary (never both)."""
        return len(self.primaries) == 1

    @property
    def primary(self) -> NodeId | None:
        primaries = self.primaries
        return primaries[0] if len(primaries) == 1 else None

    def describe(self) -> str:
        return ", ".join(f"{n}={r.value}" for n, r in sorted(self.roles.items()))

    def as_dict(self) -> dict[str, str]:
        return {n: r.value for n, r in sorted(self.roles.items())}


class RunOutcome(str, Enum):
    """
    Terminal state of a protocol run.

    Runs flow through:
        init -> preflight ok -> confirmed -> steps -> complete/partial_failure
    and stop early with aborted_at_preflight, declined or dry_run.
    """

    COMPLETE = "complete"
    """All steps finished (some may carry warnings)."""

    ABORTED_AT_PREFLIGHT = "aborted_at_preflight"
    """A precondition failed. Nothing was changed."""

    DECLINED = "declined"
    """The operator answered no at the confirmation gate."""

    DRY_RUN = "dry_run"
    """Preflight passed and the plan was listed without executing it."""

    PARTIAL_FAILURE = "partial_failure"
    """A mutating step failed. Manual recovery is required."""

    @property
    def exit_code(self) -> int:
        if self in (RunOutcome.COMPLETE, RunOutcome.DRY_RUN):
            return 0
        if self == RunOutcome.PARTIAL_FAILURE:
            return 2
        return 1


class StepStatus(str, Enum):
    """Lifecycle of a single orchestrator step."""

    PENDING = "pending"
    PLANNED = "planned"
    RUNNING = "running"
    COMPLETED = "completed"
    WARNED = "warned"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_RUN = "not_run"


class StepRecord(BaseModel):
    """
    Record of one step within a protocol run.

    Attributes:
        name: Stable step identifier (e.g. "promote-local")
        description: Human-readable summary of what the step does
        status: Current lifecycle state
        detail: Outcome detail or warning/error message
        started_at: When execution started
        finished_at: When execution ended
    """

    name: str = Field(..., description="Stable step identifier")
    description: str = Field(..., description="What the step does")
    status: StepStatus = Field(default=StepStatus.PENDING, description="Lifecycle state")
    detail: str | None = Field(default=None, description="Outcome or failure detail")
    started_at: datetime | None = Field(default=None, description="Execution start")
    finished_at: datetime | None = Field(default=None, description="Execution end")


class ProtocolRun(BaseModel):
    """
    Ephemeral record of one orchestrator invocation.

    Created when a protocol starts, rendered to the operator at the end and
    then discarded. It is never written to disk.

    Attributes:
        protocol: Protocol name (e.g. "emergency-failover")
        local_node: Node id the protocol runs on
        dry_run: Whether mutations were suppressed
        confirmed: Whether the operator passed the confirmation gate
        steps: Ordered step records
        current_step: Name of the step executing (or last executed)
        outcome: Terminal state (None while running)
        error: Message of the failure that ended the run
        observed: Values observed at the point of failure
        warnings: Non-fatal warnings raised during preflight or steps
        reconciliation: Items needing manual reconciliation (edge drift)
        next_steps: Operator hints printed after the summary
        topology_before: Roles observed at preflight
        topology_after: Roles after the run
        started_at: When the run began
        finished_at: When the run ended
    """

    protocol: str = Field(..., description="Protocol name")
    local_node: str = Field(..., description="Node id the protocol runs on")
    dry_run: bool = Field(default=False, description="Mutations suppressed")
    confirmed: bool = Field(default=False, description="Operator confirmed")
    steps: list[StepRecord] = Field(default_factory=list, description="Ordered steps")
    current_step: str | None = Field(default=None, description="Step in progress")
    outcome: RunOutcome | None = Field(default=None, description="Terminal state")
    error: str | None = Field(default=None, description="Failure message")
    observed: dict[str, str] = Field(
        default_factory=dict, description="Values observed at failure"
    )
    warnings: list[str] = Field(default_factory=list, description="Non-fatal warnings")
    reconciliation: list[str] = Field(
        default_factory=list, description="Items needing manual reconciliation"
    )
    next_steps: list[str] = Field(default_factory=list, description="Operator hints")
    topology_before: dict[str, str] | None = Field(
        default=None, description="Roles observed at preflight"
    )
    topology_after: dict[str, str] | None = Field(
        default=None, description="Roles after the run"
    )
    started_at: datetime = Field(default_factory=datetime.now, description="Run start")
    finished_at: datetime | None = Field(default=None, description="Run end")

    @computed_field
    @property
    def completed_steps(self) -> list[str]:
        """Names of the steps that finished (including those with warnings)."""
        return [
            s.name
            for s in self.steps
            if s.status in (StepStatus.COMPLETED, StepStatus.WARNED, StepStatus.SKIPPED)
        ]

    @property
    def exit_code(self) -> int:
        if self.outcome is None:
            return 2
        return self.outcome.exit_code

    def step(self, name: str) -> StepRecord:
        for record in self.steps:
            if record.name == name:
                return record
        raise KeyError(name)
