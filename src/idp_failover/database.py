"""Database control surface for PostgreSQL nodes.

Wraps the PostgreSQL commands the role transitions need (role query,
readiness, promote, wipe, full copy, follower configuration, the
replication allowlist and service start/stop) as async calls executed in
the database container through a ContainerRuntime.

Methods return CommandResult and leave interpretation to the callers: a
failed read probe means Unreachable to the detector but a fatal failure to
the resync executor.
"""

import logging

from idp_failover.conffile import (
    ConfFile,
    HbaFile,
    HbaRecord,
    format_conninfo,
    hba_address,
    parse_conninfo,
)
from idp_failover.config import Cluster
from idp_failover.remote.runtime import ContainerRuntime
from idp_failover.remote.transport import CommandResult
from idp_failover.types import Node

logger = logging.getLogger(__name__)

RECOVERY_QUERY = "SELECT pg_is_in_recovery();"
STANDBY_LSN_QUERY = "SELECT pg_last_wal_receive_lsn(), pg_last_wal_replay_lsn();"
ATTACHED_STANDBYS_QUERY = "SELECT count(*) FROM pg_stat_replication;"
RELOAD_QUERY = "SELECT pg_reload_conf();"

AUTO_CONF = "postgresql.auto.conf"
STANDBY_SIGNAL = "standby.signal"


class DatabaseControl:
    """PostgreSQL operations on any node of the cluster."""

    def __init__(self, runtime: ContainerRuntime, cluster: Cluster):
        self.runtime = runtime
        self.cluster = cluster
        self.db = cluster.config.database
        self.timeouts = cluster.config.timeouts

    async def _exec(
        self,
        node: Node,
        argv: list[str],
        *,
        timeout: float,
        as_postgres: bool = False,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        return await self.runtime.exec(
            self.cluster.host_for(node),
            self.db.container,
            argv,
            timeout=timeout,
            env=env,
            user=self.db.os_user if as_postgres else None,
        )

    async def psql(self, node: Node, sql: str) -> CommandResult:
        """Run a single read-only query in tuples-only, unaligned mode."""
        return await self._exec(
            node, ["psql", "-tAc", sql], timeout=self.timeouts.probe, as_postgres=True
        )

    async def query_recovery(self, node: Node) -> CommandResult:
        """Run ``pg_is_in_recovery()``; stdout is ``t`` on a standby, ``f`` on a primary."""
        return await self.psql(node, RECOVERY_QUERY)

    async def is_ready(self, node: Node) -> CommandResult:
        """Run ``pg_isready`` against the node's own server."""
        return await self._exec(node, ["pg_isready"], timeout=self.timeouts.probe)

    async def can_reach(self, node: Node, source: Node) -> CommandResult:
        """From ``node``'s container, check ``source`` accepts connections."""
        wait = int(self.timeouts.probe)
        return await self._exec(
            node,
            ["pg_isready", "-h", source.fqdn, "-p", str(source.db_port), "-t", str(wait)],
            timeout=self.timeouts.probe + 2,
        )

    async def exists(self, node: Node) -> bool:
        return await self.runtime.exists(
            self.cluster.host_for(node), self.db.container, timeout=self.timeouts.probe
        )

    async def promote(self, node: Node) -> CommandResult:
        return await self._exec(
            node,
            [f"{self.db.bin_dir}/pg_ctl", "promote", "-D", self.db.data_path],
            timeout=self.timeouts.command,
            as_postgres=True,
        )

    async def stop(self, node: Node) -> CommandResult:
        return await self._exec(
            node, ["systemctl", "stop", self.db.service], timeout=self.timeouts.command
        )

    async def start(self, node: Node) -> CommandResult:
        return await self._exec(
            node, ["systemctl", "start", self.db.service], timeout=self.timeouts.command
        )

    async def wipe(self, node: Node) -> CommandResult:
        """Delete everything inside the data directory, keeping the directory itself."""
        logger.warning("Wiping %s on %s", self.db.data_path, node.id)
        return await self._exec(
            node,
            ["find", self.db.data_path, "-mindepth", "1", "-delete"],
            timeout=self.timeouts.command,
        )

    async def base_backup(self, node: Node, source: Node, credential: str) -> CommandResult:
        """Stream a full physical copy of ``source`` into ``node``'s data directory.

        The credential reaches pg_basebackup through PGPASSWORD only. Recovery
        settings are not generated here (no ``-R``) because pg_basebackup
        would write the password into postgresql.auto.conf.
        """
        logger.info("Streaming full copy from %s to %s", source.id, node.id)
        return await self._exec(
            node,
            [
                "pg_basebackup",
                "-h", source.fqdn,
                "-p", str(source.db_port),
                "-U", self.db.replication_user,
                "-D", self.db.data_path,
                "-Fp", "-Xs", "-P",
            ],
            timeout=self.timeouts.stream,
            as_postgres=True,
            env={"PGPASSWORD": credential},
        )

    def follower_conninfo(self, node: Node, source: Node) -> str:
        params = {
            "user": self.db.replication_user,
            "host": source.fqdn,
            "port": str(source.db_port),
            "application_name": node.id,
        }
        if self.db.passfile:
            params["passfile"] = self.db.passfile
        return format_conninfo(params)

    async def configure_follower(self, node: Node, source: Node) -> CommandResult:
        """Point ``node`` at ``source`` via postgresql.auto.conf and standby.signal.

        The existing auto.conf is parsed, primary_conninfo replaced, and the
        file written back; any password a previous tool left in the conninfo
        is dropped.
        """
        auto_conf = f"{self.db.data_path}/{AUTO_CONF}"
        current = await self._exec(
            node, ["cat", auto_conf], timeout=self.timeouts.command, as_postgres=True
        )
        conf = ConfFile.parse(current.stdout if current.ok else "", dialect="postgres")
        previous = parse_conninfo(conf.get("primary_conninfo") or "")
        if "password" in previous:
            logger.warning("Dropping stored password from primary_conninfo on %s", node.id)
        conf.set("primary_conninfo", self.follower_conninfo(node, source))

        written = await self.runtime.write_file(
            self.cluster.host_for(node),
            self.db.container,
            auto_conf,
            conf.serialize(),
            timeout=self.timeouts.command,
        )
        if not written.ok:
            return written
        return await self._exec(
            node,
            ["touch", f"{self.db.data_path}/{STANDBY_SIGNAL}"],
            timeout=self.timeouts.command,
            as_postgres=True,
        )

    async def allow_replication(self, primary: Node, standby: Node) -> CommandResult:
        """Make ``primary`` accept replication connections from ``standby``.

        pg_hba.conf is parsed; when no host record already grants the
        replication user access from the standby's address, one is appended,
        the file is written back and the configuration reloaded. An existing
        grant leaves the file untouched.
        """
        hba_path = self.db.hba_path
        address = hba_address(standby.replication_client)
        current = await self._exec(primary, ["cat", hba_path], timeout=self.timeouts.command)
        if not current.ok:
            return current
        hba = HbaFile.parse(current.stdout)
        if hba.allows_replication(self.db.replication_user, address):
            logger.info("%s already accepts replication from %s", primary.id, address)
            return current

        logger.info("Allowing replication from %s (%s) on %s", standby.id, address, primary.id)
        hba.add(
            HbaRecord("host", "replication", self.db.replication_user, address, self.db.hba_method),
            comment=f"Allow replication from {standby.id}",
        )
        written = await self.runtime.write_file(
            self.cluster.host_for(primary),
            self.db.container,
            hba_path,
            hba.serialize(),
            timeout=self.timeouts.command,
        )
        if not written.ok:
            return written
        return await self.psql(primary, RELOAD_QUERY)

    async def container_address(self, node: Node) -> str | None:
        """First address reported by ``hostname -I`` in the database container."""
        result = await self._exec(node, ["hostname", "-I"], timeout=self.timeouts.probe)
        if not result.ok:
            return None
        addresses = result.stdout.split()
        return addresses[0] if addresses else None

    async def replication_detail(self, node: Node, standby: bool) -> str:
        """Receive/replay positions on a standby, attached standby count on a primary."""
        if standby:
            result = await self.psql(node, STANDBY_LSN_QUERY)
            if not result.ok:
                return "unknown"
            receive, _, replay = result.stdout.strip().partition("|")
            return f"receive={receive or '-'} replay={replay or '-'}"
        result = await self.psql(node, ATTACHED_STANDBYS_QUERY)
        if not result.ok:
            return "unknown"
        return f"standbys={result.stdout.strip() or '0'}"
