"""Host command transport over SSH or local subprocess.

Every call runs through asyncio.create_subprocess_exec with array arguments.
Remote commands are joined with shlex.join so each argument reaches the
remote shell quoted; no shell string is ever built by interpolation.

Every call carries a timeout. When it expires the process is killed and
CommandTimeout is raised; callers decide whether that means Unreachable
(read probes) or a fatal failure (mutations).
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass
from typing import Sequence

from idp_failover.exceptions import CommandTimeout, HostUnreachable

logger = logging.getLogger(__name__)

# ssh reserves exit status 255 for its own connection errors
SSH_CONNECTION_ERROR = 255


@dataclass
class CommandResult:
    """Captured result of one command.

    Attributes:
        argv: Command that was run (without the ssh wrapper)
        returncode: Process exit code
        stdout: Decoded standard output
        stderr: Decoded standard error
    """

    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def summary(self) -> str:
        """Short description for error messages: exit code plus stderr tail."""
        tail = (self.stderr or self.stdout).strip().splitlines()[-3:]
        detail = " | ".join(tail) if tail else "no output"
        return f"exit {self.returncode}: {detail}"


class SSHTransport:
    """Runs commands locally or on a remote host over ssh.

    ssh runs with BatchMode so a missing key fails fast instead of prompting,
    and with ConnectTimeout so an unreachable host is detected within the
    probe timeout.
    """

    def __init__(
        self,
        user: str = "sysadmin",
        connect_timeout: int = 5,
        ssh_options: Sequence[str] = (),
    ):
        """Initialize the transport.

        Args:
            user: Remote login user
            connect_timeout: Seconds allowed for establishing the connection
            ssh_options: Extra ``-o`` options (e.g. StrictHostKeyChecking=no)
        """
        self.user = user
        self.connect_timeout = connect_timeout
        self.ssh_options = list(ssh_options)

    def wrap(self, host: str | None, argv: Sequence[str]) -> list[str]:
        """Return the argv actually executed for ``argv`` on ``host``."""
        if host is None:
            return list(argv)
        command = ["ssh", "-o", f"ConnectTimeout={self.connect_timeout}", "-o", "BatchMode=yes"]
        for option in self.ssh_options:
            command.extend(["-o", option])
        command.append(f"{self.user}@{host}")
        command.append(shlex.join(argv))
        return command

    async def run(
        self,
        host: str | None,
        argv: Sequence[str],
        *,
        timeout: float,
        input: str | None = None,
    ) -> CommandResult:
        """Run ``argv`` on ``host`` (None for the local machine).

        Args:
            host: SSH host, or None to run locally
            argv: Command and arguments
            timeout: Seconds before the process is killed
            input: Text fed to the command's stdin

        Returns:
            CommandResult with the exit code and decoded output

        Raises:
            HostUnreachable: If ssh could not connect or the binary is missing
            CommandTimeout: If the command exceeded ``timeout``
        """
        target = host or "local"
        command = self.wrap(host, argv)
        logger.debug("%s$ %s", target, shlex.join(argv))

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise HostUnreachable(target, f"command not found: {command[0]}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input.encode("utf-8") if input is not None else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CommandTimeout(target, timeout) from None

        result = CommandResult(
            argv=list(argv),
            returncode=proc.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if host is not None and result.returncode == SSH_CONNECTION_ERROR:
            raise HostUnreachable(host, result.stderr.strip() or "ssh connection failed")
        return result
