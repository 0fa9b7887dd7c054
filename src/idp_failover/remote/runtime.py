"""Container runtimes for executing commands inside service containers.

Two implementations share one interface:
- LxdRuntime: ``lxc exec`` on the node, over SSH for remote nodes
- DockerRuntime: python-on-whales against a local or ``ssh://`` daemon

Blocking Docker calls go through run_in_executor so the event loop is never
blocked, and are bounded with asyncio.wait_for. A worker thread cannot be
cancelled, so commands are also wrapped in coreutils ``timeout`` inside the
container: the process is killed there and the thread returns soon after.
"""

import asyncio
import logging
import re
from typing import Mapping, Protocol, Sequence

from python_on_whales import DockerClient
from python_on_whales.exceptions import DockerException, NoSuchContainer

from idp_failover.exceptions import CommandTimeout, HostUnreachable
from idp_failover.remote.transport import CommandResult, SSHTransport

logger = logging.getLogger(__name__)

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Docker CLI messages that mean the daemon itself was not reachable
_DOCKER_CONNECT_ERRORS = ("error during connect", "Cannot connect to the Docker daemon")

# Seconds between TERM and KILL in the container, and extra time allowed for
# the docker CLI on top of the command timeout
_KILL_AFTER = 5
_CLIENT_GRACE = 10

# coreutils timeout exit codes: TERM honoured, or KILL after the grace period
_TIMED_OUT = (124, 137)


class ContainerRuntime(Protocol):
    """Execute commands in a named container on a node."""

    async def exec(
        self,
        host: str | None,
        container: str,
        argv: Sequence[str],
        *,
        timeout: float,
        env: Mapping[str, str] | None = None,
        user: str | None = None,
    ) -> CommandResult: ...

    async def exists(self, host: str | None, container: str, *, timeout: float) -> bool: ...

    async def write_file(
        self,
        host: str | None,
        container: str,
        path: str,
        content: str,
        *,
        timeout: float,
    ) -> CommandResult: ...


def _check_env_names(env: Mapping[str, str]) -> None:
    for name in env:
        if not _ENV_NAME.match(name):
            raise ValueError(f"Invalid environment variable name: {name!r}")


class LxdRuntime:
    """Runs commands in LXD containers via ``lxc exec``.

    Environment values are fed through stdin and exported by a small sh
    prelude, so secrets never appear on any command line (local ``ps``,
    the ssh argv, or the ``lxc`` argv).
    """

    def __init__(self, transport: SSHTransport):
        self.transport = transport

    @staticmethod
    def _command(
        container: str,
        argv: Sequence[str],
        env: Mapping[str, str] | None,
        user: str | None,
    ) -> tuple[list[str], str | None]:
        command = ["lxc", "exec", container, "--"]
        if user:
            command.extend(["sudo", "-u", user])
        if not env:
            return command + list(argv), None

        _check_env_names(env)
        prelude = "".join(f"IFS= read -r {name}; export {name}; " for name in env)
        command.extend(["sh", "-c", prelude + 'exec "$@"', "sh", *argv])
        return command, "".join(f"{value}\n" for value in env.values())

    async def exec(
        self,
        host: str | None,
        container: str,
        argv: Sequence[str],
        *,
        timeout: float,
        env: Mapping[str, str] | None = None,
        user: str | None = None,
    ) -> CommandResult:
        command, stdin = self._command(container, argv, env, user)
        result = await self.transport.run(host, command, timeout=timeout, input=stdin)
        result.argv = list(argv)
        return result

    async def exists(self, host: str | None, container: str, *, timeout: float) -> bool:
        result = await self.transport.run(host, ["lxc", "info", container], timeout=timeout)
        return result.ok

    async def write_file(
        self,
        host: str | None,
        container: str,
        path: str,
        content: str,
        *,
        timeout: float,
    ) -> CommandResult:
        command = ["lxc", "exec", container, "--", "sh", "-c", 'cat > "$1"', "sh", path]
        return await self.transport.run(host, command, timeout=timeout, input=content)


class DockerRuntime:
    """Runs commands in Docker containers through python-on-whales.

    Remote nodes are reached with ``DOCKER_HOST=ssh://user@host``; one client
    is kept per host.
    """

    def __init__(self, ssh_user: str = "sysadmin"):
        self.ssh_user = ssh_user
        self._clients: dict[str | None, DockerClient] = {}

    def _client(self, host: str | None) -> DockerClient:
        if host not in self._clients:
            if host is None:
                self._clients[host] = DockerClient()
            else:
                self._clients[host] = DockerClient(host=f"ssh://{self.ssh_user}@{host}")
        return self._clients[host]

    async def _run_blocking(self, host: str | None, timeout: float, func):
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(loop.run_in_executor(None, func), timeout=timeout)
        except asyncio.TimeoutError:
            raise CommandTimeout(host or "local", timeout) from None

    async def exec(
        self,
        host: str | None,
        container: str,
        argv: Sequence[str],
        *,
        timeout: float,
        env: Mapping[str, str] | None = None,
        user: str | None = None,
    ) -> CommandResult:
        client = self._client(host)
        command = list(argv)
        bounded = ["timeout", "-k", str(_KILL_AFTER), f"{timeout:g}", *command]
        logger.debug("%s$ docker exec %s %s", host or "local", container, " ".join(command))

        def _blocking_exec() -> CommandResult:
            try:
                output = client.container.execute(
                    container, bounded, envs=dict(env or {}), user=user
                )
            except NoSuchContainer:
                return CommandResult(command, 1, "", f"No such container: {container}")
            except DockerException as e:
                stderr = e.stderr or ""
                if any(marker in stderr for marker in _DOCKER_CONNECT_ERRORS):
                    raise HostUnreachable(host or "local", stderr.strip()) from e
                if e.return_code in _TIMED_OUT:
                    raise CommandTimeout(host or "local", timeout) from e
                return CommandResult(command, e.return_code, e.stdout or "", stderr)
            return CommandResult(command, 0, output or "", "")

        return await self._run_blocking(host, timeout + _KILL_AFTER + _CLIENT_GRACE, _blocking_exec)

    async def exists(self, host: str | None, container: str, *, timeout: float) -> bool:
        client = self._client(host)

        def _blocking_exists() -> bool:
            try:
                return client.container.exists(container)
            except DockerException as e:
                raise HostUnreachable(host or "local", (e.stderr or str(e)).strip()) from e

        return await self._run_blocking(host, timeout, _blocking_exists)

    async def write_file(
        self,
        host: str | None,
        container: str,
        path: str,
        content: str,
        *,
        timeout: float,
    ) -> CommandResult:
        # docker exec has no stdin here, so the content travels in the exec environment
        return await self.exec(
            host,
            container,
            ["sh", "-c", 'printf "%s" "$IDP_CONTENT" > "$1"', "sh", path],
            timeout=timeout,
            env={"IDP_CONTENT": content},
        )
