"""Tests for edge load balancer membership."""

import pytest
import yaml

from conftest import FakeTransport, traefik_config
from idp_failover.config import EdgeConfig, TimeoutConfig
from idp_failover.edge import EdgeMembershipManager
from idp_failover.exceptions import PartialApplication
from idp_failover.types import Node

IDP01 = Node(id="idp01", fqdn="idp01.outliertechnology.co.uk", ssh_host="idp001")
IDP02 = Node(id="idp02", fqdn="idp02.outliertechnology.co.uk", ssh_host="idp002")


@pytest.fixture
def manager(sim):
    edges = [
        EdgeConfig(name="sec001", host="sec001"),
        EdgeConfig(name="sec002", host="sec002"),
    ]
    return EdgeMembershipManager(FakeTransport(sim), edges, TimeoutConfig())


class TestRemoveBackend:
    """Tests for remove_backend()."""

    @pytest.mark.asyncio
    async def test_removes_from_every_edge(self, sim, manager):
        result = await manager.remove_backend(IDP01)

        assert result.ok
        assert result.applied == ["sec001", "sec002"]
        assert sim.backends("sec001") == [IDP02.app_endpoint]
        assert sim.backends("sec002") == [IDP02.app_endpoint]

    @pytest.mark.asyncio
    async def test_idempotent(self, sim, manager):
        await manager.remove_backend(IDP01)
        writes = len(sim.mutations)

        result = await manager.remove_backend(IDP01)

        assert result.unchanged == ["sec001", "sec002"]
        assert result.applied == []
        assert len(sim.mutations) == writes

    @pytest.mark.asyncio
    async def test_keeps_rest_of_document(self, sim, manager):
        await manager.remove_backend(IDP01)

        document = yaml.safe_load(sim.edges["sec001"].text)
        assert document["http"]["routers"]["keycloak"]["service"] == "keycloak"
        assert document["http"]["routers"]["keycloak"]["entryPoints"] == ["websecure"]

    @pytest.mark.asyncio
    async def test_unreachable_edge_recorded(self, sim, manager):
        sim.edges["sec001"].reachable = False

        result = await manager.remove_backend(IDP01)

        assert not result.ok
        assert list(result.failed) == ["sec001"]
        assert result.applied == ["sec002"]
        with pytest.raises(PartialApplication, match="needs manual reconciliation") as exc_info:
            result.check()
        assert exc_info.value.failed == result.failed

    @pytest.mark.asyncio
    async def test_invalid_yaml_recorded(self, sim, manager):
        sim.edges["sec002"].text = "http: [unclosed"

        result = await manager.remove_backend(IDP01)

        assert "invalid YAML" in result.failed["sec002"]
        assert sim.edges["sec002"].text == "http: [unclosed"


class TestAddBackend:
    """Tests for add_backend()."""

    @pytest.mark.asyncio
    async def test_adds_missing_backend(self, sim, manager):
        sim.edges["sec001"].text = traefik_config("idp02")
        sim.edges["sec002"].text = traefik_config("idp02")

        result = await manager.add_backend(IDP01)

        assert result.applied == ["sec001", "sec002"]
        assert sim.backends("sec001") == [IDP02.app_endpoint, IDP01.app_endpoint]

    @pytest.mark.asyncio
    async def test_present_backend_unchanged(self, sim, manager):
        result = await manager.add_backend(IDP01)

        assert result.unchanged == ["sec001", "sec002"]
        assert sim.mutations == []

    @pytest.mark.asyncio
    async def test_creates_service_section(self, sim, manager):
        sim.edges["sec001"].text = ""

        await manager.add_backend(IDP01)

        assert sim.backends("sec001") == [IDP01.app_endpoint]

    @pytest.mark.asyncio
    async def test_write_goes_through_sudo_tee(self, sim, manager):
        sim.edges["sec001"].text = traefik_config("idp02")

        await manager.add_backend(IDP01)

        writes = [argv for host, argv in sim.calls if host == "sec001" and "tee" in argv]
        assert writes == [("sudo", "-n", "tee", "/srv/security-stack/systems/traefik/dynamic/keycloak.yml")]


class TestListBackends:
    """Tests for list_backends()."""

    @pytest.mark.asyncio
    async def test_lists_each_edge(self, sim, manager):
        sim.edges["sec002"].reachable = False

        views = await manager.list_backends()

        assert views[0].name == "sec001"
        assert views[0].backends == [IDP01.app_endpoint, IDP02.app_endpoint]
        assert views[1].backends == []
        assert "Connection timed out" in views[1].error
