"""Remote execution: host transport and container runtimes."""

from idp_failover.remote.runtime import ContainerRuntime, DockerRuntime, LxdRuntime
from idp_failover.remote.transport import CommandResult, SSHTransport

__all__ = [
    "CommandResult",
    "ContainerRuntime",
    "DockerRuntime",
    "LxdRuntime",
    "SSHTransport",
]
