"""
Load balancer membership on the edge proxies.

Each edge runs Traefik with a file-provider dynamic config. Backends live at
``http.services.<service>.loadBalancer.servers`` as ``{url: ...}`` entries.
An update reads the YAML, mutates that list, and writes the whole document
back; Traefik hot-reloads it.

Updates fan out to every edge in turn. One failing edge is logged and
recorded, never fatal, so membership can drift between edges until someone
reconciles it. There is no lock: a single writer is assumed.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

import yaml

from idp_failover.config import EdgeConfig, TimeoutConfig
from idp_failover.exceptions import HostUnreachable, PartialApplication
from idp_failover.remote.transport import SSHTransport
from idp_failover.types import Node

logger = logging.getLogger(__name__)

Action = Literal["add", "remove"]


class EdgeConfigError(Exception):
    """The dynamic config on an edge could not be read, parsed or written."""


@dataclass
class MembershipResult:
    """
    Outcome of one fan-out update.

    Attributes:
        action: "add" or "remove"
        url: Backend URL that was added or removed
        applied: Edges whose config was changed
        unchanged: Edges already in the desired state
        failed: Edge name to failure reason
    """

    action: Action
    url: str
    applied: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def check(self) -> "MembershipResult":
        """Raise PartialApplication when any edge failed."""
        if self.failed:
            raise PartialApplication(self.action, self.url, self.failed)
        return self


@dataclass
class EdgeView:
    """Backends registered on one edge, or the reason they could not be read."""

    name: str
    backends: list[str] = field(default_factory=list)
    error: str | None = None


def _servers(document: dict[str, Any], service: str, create: bool) -> list[dict[str, Any]] | None:
    """Return the servers list of ``service``, creating the path when asked."""
    node: Any = document
    for key in ("http", "services", service, "loadBalancer"):
        if not isinstance(node, dict):
            raise EdgeConfigError(f"unexpected structure at {key!r}")
        if key not in node or node[key] is None:
            if not create:
                return None
            node[key] = {}
        node = node[key]
    if not isinstance(node, dict):
        raise EdgeConfigError("loadBalancer is not a mapping")
    servers = node.get("servers")
    if servers is None:
        if not create:
            return None
        servers = node["servers"] = []
    if not isinstance(servers, list):
        raise EdgeConfigError("loadBalancer.servers is not a list")
    return servers


class EdgeMembershipManager:
    """Adds and removes backend URLs across every configured edge."""

    def __init__(self, transport: SSHTransport, edges: list[EdgeConfig], timeouts: TimeoutConfig):
        self.transport = transport
        self.edges = edges
        self.timeouts = timeouts

    async def _read(self, edge: EdgeConfig) -> dict[str, Any]:
        result = await self.transport.run(
            edge.host, ["cat", edge.config_path], timeout=self.timeouts.command
        )
        if not result.ok:
            raise EdgeConfigError(f"cannot read {edge.config_path}: {result.summary()}")
        try:
            document = yaml.safe_load(result.stdout)
        except yaml.YAMLError as e:
            raise EdgeConfigError(f"invalid YAML in {edge.config_path}: {e}") from e
        if document is None:
            return {}
        if not isinstance(document, dict):
            raise EdgeConfigError(f"{edge.config_path} is not a mapping")
        return document

    async def _write(self, edge: EdgeConfig, document: dict[str, Any]) -> None:
        content = yaml.safe_dump(document, sort_keys=False, default_flow_style=False)
        argv = ["tee", edge.config_path]
        if edge.use_sudo:
            argv = ["sudo", "-n", *argv]
        result = await self.transport.run(
            edge.host, argv, timeout=self.timeouts.command, input=content
        )
        if not result.ok:
            raise EdgeConfigError(f"cannot write {edge.config_path}: {result.summary()}")

    async def _apply(self, edge: EdgeConfig, action: Action, url: str) -> bool:
        """Apply one change to one edge. Returns True if the file was rewritten."""
        document = await self._read(edge)
        servers = _servers(document, edge.service, create=action == "add")
        present = servers is not None and any(
            isinstance(s, dict) and s.get("url") == url for s in servers
        )
        if action == "add":
            if present:
                return False
            servers.append({"url": url})
        else:
            if not present:
                return False
            servers[:] = [s for s in servers if not (isinstance(s, dict) and s.get("url") == url)]
        await self._write(edge, document)
        return True

    async def _fan_out(self, action: Action, url: str) -> MembershipResult:
        result = MembershipResult(action=action, url=url)
        if not self.edges:
            logger.warning("No edges configured; %s %s skipped", action, url)
        for edge in self.edges:
            try:
                changed = await self._apply(edge, action, url)
            except (HostUnreachable, EdgeConfigError) as e:
                logger.warning("Edge %s: %s %s failed: %s", edge.name, action, url, e)
                result.failed[edge.name] = str(e)
                continue
            if changed:
                logger.info("Edge %s: %s %s", edge.name, "added" if action == "add" else "removed", url)
                result.applied.append(edge.name)
            else:
                logger.info("Edge %s: %s already %s", edge.name, url, "present" if action == "add" else "absent")
                result.unchanged.append(edge.name)
        return result

    async def add_backend(self, node: Node) -> MembershipResult:
        return await self._fan_out("add", node.app_endpoint)

    async def remove_backend(self, node: Node) -> MembershipResult:
        return await self._fan_out("remove", node.app_endpoint)

    async def list_backends(self) -> list[EdgeView]:
        views = []
        for edge in self.edges:
            try:
                document = await self._read(edge)
                servers = _servers(document, edge.service, create=False) or []
            except (HostUnreachable, EdgeConfigError) as e:
                views.append(EdgeView(name=edge.name, error=str(e)))
                continue
            urls = [s["url"] for s in servers if isinstance(s, dict) and "url" in s]
            views.append(EdgeView(name=edge.name, backends=urls))
        return views
