"""
Error taxonomy for role transitions.

- ValidationError: a precondition is unmet; raised before any mutation (exit 1)
- PeerReachabilityError: peer reachability contradicts the protocol
- MutationFailure: a mutating step failed; state is partial (exit 2)
- StepWarning: a step finished but needs operator attention (non-fatal)
- HostUnreachable / CommandTimeout: transport-level failures
- ConfigError: the cluster map is invalid or does not name this host

Per project patterns:
- Store context data in attributes for error handling
- Include descriptive message with relevant details
"""


class ConfigError(Exception):
    """Raised when the cluster configuration is invalid or unusable."""


class Declined(Exception):
    """The operator answered no at a confirmation gate. Nothing was changed."""

    exit_code = 1


class ValidationError(Exception):
    """
    Raised when a protocol precondition is not met.

    Validation errors are raised before any state mutation, so the cluster
    is left exactly as it was found.

    Attributes:
        protocol: Protocol or operation that was being validated
        errors: Human-readable list of unmet preconditions
    """

    exit_code = 1

    def __init__(self, protocol: str, errors: list[str]) -> None:
        self.protocol = protocol
        self.errors = errors
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"{self.protocol} preflight failed: {'; '.join(self.errors)}"


class PeerReachabilityError(ValidationError):
    """
    Peer reachability contradicts what the protocol requires.

    Attributes:
        peer_id: The peer node that was probed
        overridable: Whether ``--force`` may override this error
    """

    overridable = False

    def __init__(self, protocol: str, peer_id: str, message: str) -> None:
        self.peer_id = peer_id
        super().__init__(protocol, [message])


class PeerStillReachable(PeerReachabilityError):
    """Emergency failover refused because the peer still answers."""

    overridable = True

    def __init__(self, protocol: str, peer_id: str) -> None:
        super().__init__(
            protocol,
            peer_id,
            f"peer {peer_id} still reachable, use switchover "
            f"(or --force if you are sure it must be fenced)",
        )


class UnreachablePeer(PeerReachabilityError):
    """A protocol that needs a live peer or source could not reach it."""

    def __init__(self, protocol: str, peer_id: str) -> None:
        super().__init__(protocol, peer_id, f"node {peer_id} is unreachable")


class MutationFailure(Exception):
    """
    Raised when a mutating step fails after confirmation.

    Nothing is rolled back. The message and attributes carry enough context
    for an operator to resume by hand.

    Attributes:
        step: Name of the operation or stage that failed
        node_id: Node the operation targeted
        observed: Values observed at the point of failure
    """

    exit_code = 2

    def __init__(
        self,
        step: str,
        node_id: str,
        message: str,
        observed: dict[str, str] | None = None,
    ) -> None:
        self.step = step
        self.node_id = node_id
        self.observed = observed or {}
        super().__init__(f"{step} failed on {node_id}: {message}")


class PromotionFailed(MutationFailure):
    """Promotion was issued but Primary was not observed in time. Not retried."""

    def __init__(self, node_id: str, message: str, observed: dict[str, str] | None = None) -> None:
        super().__init__("promote", node_id, message, observed)


class ResyncFailed(MutationFailure):
    """
    Resynchronization failed.

    Attributes:
        stage: Resync stage that failed (stop, verify-source, wipe, stream, ...)
        data_lost: True once local data has been wiped; the node has no usable
            data and needs manual recovery
    """

    def __init__(
        self,
        node_id: str,
        stage: str,
        message: str,
        data_lost: bool,
        observed: dict[str, str] | None = None,
    ) -> None:
        self.stage = stage
        self.data_lost = data_lost
        if data_lost:
            message = f"{message} (local data wiped, manual recovery required)"
        else:
            message = f"{message} (aborted before wipe, no data lost)"
        super().__init__(f"resync/{stage}", node_id, message, observed)


class RedirectFailed(MutationFailure):
    """The application was rewritten and restarted but never became ready."""

    def __init__(self, node_id: str, message: str, observed: dict[str, str] | None = None) -> None:
        super().__init__("redirect-app", node_id, message, observed)


class TopologyViolation(MutationFailure):
    """The final probe did not find exactly one Primary."""

    def __init__(self, node_id: str, observed: dict[str, str]) -> None:
        roles = ", ".join(f"{k}={v}" for k, v in sorted(observed.items()))
        super().__init__(
            "verify-topology",
            node_id,
            f"expected exactly one primary, observed {roles}",
            observed,
        )


class StepWarning(Exception):
    """A step finished but left something for the operator to look at."""


class PartialApplication(StepWarning):
    """
    An edge membership update did not reach every edge instance.

    Attributes:
        action: "add" or "remove"
        url: Backend URL being changed
        failed: Mapping of edge name to failure reason
    """

    def __init__(self, action: str, url: str, failed: dict[str, str]) -> None:
        self.action = action
        self.url = url
        self.failed = failed
        edges = ", ".join(f"{name} ({reason})" for name, reason in sorted(failed.items()))
        super().__init__(
            f"{action} {url} did not apply on: {edges}; needs manual reconciliation"
        )


class StandbyNotVerified(StepWarning):
    """Resync finished but the node was not observed as Standby in time."""

    def __init__(self, node_id: str, observed_role: str) -> None:
        self.node_id = node_id
        self.observed_role = observed_role
        super().__init__(
            f"{node_id} started but was observed as {observed_role}, not standby; "
            f"check replication before relying on it"
        )


class HostUnreachable(Exception):
    """
    The remote-execution channel could not reach a host.

    Attributes:
        host: Target host
    """

    def __init__(self, host: str, message: str) -> None:
        self.host = host
        super().__init__(f"{host}: {message}")


class CommandTimeout(HostUnreachable):
    """
    A remote call exceeded its per-call timeout.

    Attributes:
        timeout: The timeout that expired, in seconds
    """

    def __init__(self, host: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(host, f"command timed out after {timeout:g}s")
