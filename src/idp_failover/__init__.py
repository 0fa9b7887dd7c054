"""
idp-failover: operator-driven role transitions for a two-node identity stack.

A PostgreSQL primary/standby pair backs a Keycloak application on each node,
fronted by Traefik edge proxies. This package moves the primary role between
the nodes with a human in the loop:

- EmergencyFailover: promote the surviving standby when the primary is dead
- PlannedSwitchover: swap roles between two healthy nodes
- Reinstatement: rebuild a repaired node as standby of the current primary
"""

from idp_failover.config import Cluster, ClusterConfig, load_cluster_config, resolve_cluster
from idp_failover.exceptions import (
    MutationFailure,
    PartialApplication,
    StepWarning,
    ValidationError,
)
from idp_failover.orchestrator import EmergencyFailover, PlannedSwitchover, Reinstatement
from idp_failover.types import ClusterTopology, Node, ProtocolRun, ReplicationRole, RunOutcome

__version__ = "0.1.0"

__all__ = [
    "Cluster",
    "ClusterConfig",
    "ClusterTopology",
    "EmergencyFailover",
    "MutationFailure",
    "Node",
    "PartialApplication",
    "PlannedSwitchover",
    "ProtocolRun",
    "Reinstatement",
    "ReplicationRole",
    "RunOutcome",
    "StepWarning",
    "ValidationError",
    "load_cluster_config",
    "resolve_cluster",
]
