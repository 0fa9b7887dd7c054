"""Repoint the identity application at a database and restart it.

The application config is parsed as ``key=value`` lines, the host part of
``db-url`` is replaced, and the file is written back whole. The restart
always happens, even when the target did not change, and the run only
continues once the readiness endpoint answers.
"""

import asyncio
import logging
import re

import httpx

from idp_failover.conffile import ConfFile
from idp_failover.config import Cluster
from idp_failover.database import DatabaseControl
from idp_failover.detector import Sleep
from idp_failover.exceptions import HostUnreachable, RedirectFailed
from idp_failover.remote.runtime import ContainerRuntime
from idp_failover.types import Node

logger = logging.getLogger(__name__)

DB_URL_KEY = "db-url"
DEFAULT_PG_PORT = 5432

_JDBC_URL = re.compile(r"^(jdbc:postgresql://)([^/?]*)(.*)$")


def rewrite_db_url(url: str, target: str) -> str:
    """Replace the ``host[:port]`` of a JDBC PostgreSQL URL.

    Example:
        rewrite_db_url("jdbc:postgresql://10.0.0.5/keycloak", "idp02.example.com")
        # 'jdbc:postgresql://idp02.example.com/keycloak'

    Raises:
        ValueError: If ``url`` is not a jdbc:postgresql URL
    """
    match = _JDBC_URL.match(url)
    if not match:
        raise ValueError(f"not a jdbc:postgresql URL: {url}")
    return f"{match.group(1)}{target}{match.group(3)}"


def _host_port(host: str, port: int) -> str:
    return host if port == DEFAULT_PG_PORT else f"{host}:{port}"


class AppRedirector:
    """Rewrites the application's database target and waits for readiness."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        cluster: Cluster,
        db: DatabaseControl,
        client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.runtime = runtime
        self.cluster = cluster
        self.db = db
        self.app = cluster.config.app
        self.timeouts = cluster.config.timeouts
        self._client = client
        self._sleep = sleep

    async def resolve_target(self, app_node: Node, primary: Node) -> str:
        """Database target for ``app_node`` when ``primary`` is the Primary.

        An application co-located with the primary talks to its own database
        container directly; any other application goes through the primary's
        FQDN.
        """
        if app_node.id != primary.id:
            return _host_port(primary.fqdn, primary.db_port)
        if primary.local_db_host:
            return _host_port(primary.local_db_host, primary.db_port)
        try:
            address = await self.db.container_address(primary)
        except HostUnreachable as e:
            raise RedirectFailed(app_node.id, f"cannot detect local database address: {e}") from e
        if not address:
            raise RedirectFailed(app_node.id, "cannot detect local database address")
        logger.info("Detected local database address %s on %s", address, primary.id)
        return _host_port(address, primary.db_port)

    async def read_db_url(self, app_node: Node) -> str | None:
        """Current ``db-url`` of the application, or None if unreadable."""
        result = await self.runtime.exec(
            self.cluster.host_for(app_node),
            self.app.container,
            ["cat", self.app.conf_path],
            timeout=self.timeouts.probe,
        )
        if not result.ok:
            return None
        return ConfFile.parse(result.stdout).get(DB_URL_KEY)

    async def redirect(self, app_node: Node, db_target: str) -> str:
        """Point ``app_node``'s application at ``db_target`` and restart it.

        Args:
            app_node: Node whose application is redirected
            db_target: ``host`` or ``host:port`` of the database

        Returns:
            The new ``db-url``

        Raises:
            RedirectFailed: If the config cannot be rewritten, the restart
                fails or readiness is never observed
        """
        host = self.cluster.host_for(app_node)
        try:
            current = await self.runtime.exec(
                host, self.app.container, ["cat", self.app.conf_path], timeout=self.timeouts.command
            )
            if not current.ok:
                raise RedirectFailed(app_node.id, f"cannot read {self.app.conf_path}: {current.summary()}")

            conf = ConfFile.parse(current.stdout)
            old_url = conf.get(DB_URL_KEY)
            if old_url is None:
                raise RedirectFailed(app_node.id, f"{DB_URL_KEY} not set in {self.app.conf_path}")
            try:
                new_url = rewrite_db_url(old_url, db_target)
            except ValueError as e:
                raise RedirectFailed(app_node.id, str(e)) from e
            conf.set(DB_URL_KEY, new_url)

            logger.info("Redirecting %s application: %s -> %s", app_node.id, old_url, new_url)
            written = await self.runtime.write_file(
                host, self.app.container, self.app.conf_path, conf.serialize(),
                timeout=self.timeouts.command,
            )
            if not written.ok:
                raise RedirectFailed(app_node.id, f"cannot write {self.app.conf_path}: {written.summary()}")

            restarted = await self.runtime.exec(
                host, self.app.container, ["systemctl", "restart", self.app.service],
                timeout=self.timeouts.command,
            )
            if not restarted.ok:
                raise RedirectFailed(
                    app_node.id, f"restart failed: {restarted.summary()}", observed={DB_URL_KEY: new_url}
                )
        except HostUnreachable as e:
            raise RedirectFailed(app_node.id, str(e)) from e

        await self.wait_ready(app_node, new_url)
        return new_url

    def readiness_url(self, node: Node) -> str:
        return f"http://{node.fqdn}:{node.health_port}{self.app.health_path}"

    async def wait_ready(self, app_node: Node, db_url: str = "") -> None:
        """Poll the readiness endpoint with bounded retries."""
        url = self.readiness_url(app_node)
        if self._client is not None:
            await self._poll(self._client, app_node, url, db_url)
            return
        async with httpx.AsyncClient(timeout=self.timeouts.probe) as client:
            await self._poll(client, app_node, url, db_url)

    async def _poll(self, client: httpx.AsyncClient, app_node: Node, url: str, db_url: str) -> None:
        last = "no response"
        for attempt in range(self.app.readiness_attempts):
            try:
                response = await client.get(url, timeout=self.timeouts.probe)
                if response.status_code == 200:
                    logger.info("%s application ready", app_node.id)
                    return
                last = f"HTTP {response.status_code}"
            except httpx.HTTPError as e:
                last = f"{type(e).__name__}: {e}"
            logger.debug("Readiness attempt %d for %s: %s", attempt + 1, app_node.id, last)
            if attempt < self.app.readiness_attempts - 1:
                await self._sleep(self.app.readiness_interval)

        raise RedirectFailed(
            app_node.id,
            f"not ready after {self.app.readiness_attempts} attempts ({last})",
            observed={"readiness": last, DB_URL_KEY: db_url},
        )
