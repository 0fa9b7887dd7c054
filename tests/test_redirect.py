"""Tests for application redirection."""

import httpx
import pytest

from conftest import no_sleep
from idp_failover.exceptions import RedirectFailed
from idp_failover.redirect import AppRedirector, rewrite_db_url


class TestRewriteDbUrl:
    """Tests for rewrite_db_url()."""

    def test_replaces_host(self):
        assert (
            rewrite_db_url("jdbc:postgresql://10.10.0.11/keycloak", "idp02.outliertechnology.co.uk")
            == "jdbc:postgresql://idp02.outliertechnology.co.uk/keycloak"
        )

    def test_replaces_host_and_port(self):
        assert (
            rewrite_db_url("jdbc:postgresql://db:5433/keycloak?ssl=true", "10.0.0.5")
            == "jdbc:postgresql://10.0.0.5/keycloak?ssl=true"
        )

    def test_without_database(self):
        assert rewrite_db_url("jdbc:postgresql://old", "new:5433") == "jdbc:postgresql://new:5433"

    def test_rejects_other_urls(self):
        with pytest.raises(ValueError, match="not a jdbc:postgresql URL"):
            rewrite_db_url("jdbc:mysql://db/keycloak", "new")


class TestResolveTarget:
    """Tests for AppRedirector.resolve_target()."""

    @pytest.mark.asyncio
    async def test_remote_primary_uses_fqdn(self, make_services):
        services = make_services("idp02")
        cluster = services.cluster
        target = await services.redirector.resolve_target(cluster.local, cluster.node("idp01"))
        assert target == "idp01.outliertechnology.co.uk"

    @pytest.mark.asyncio
    async def test_colocated_primary_uses_container_address(self, make_services):
        services = make_services("idp02")
        cluster = services.cluster
        target = await services.redirector.resolve_target(cluster.local, cluster.local)
        assert target == "10.10.0.12"

    @pytest.mark.asyncio
    async def test_configured_local_host_wins(self, sim, cluster_config, make_services):
        cluster_config.nodes["idp02"].local_db_host = "127.0.0.1"
        services = make_services("idp02")
        target = await services.redirector.resolve_target(services.cluster.local, services.cluster.local)
        assert target == "127.0.0.1"
        assert sim.calls == []

    @pytest.mark.asyncio
    async def test_address_unavailable(self, sim, make_services):
        sim.nodes["idp02"].db_exists = False
        services = make_services("idp02")
        with pytest.raises(RedirectFailed, match="cannot detect local database address"):
            await services.redirector.resolve_target(services.cluster.local, services.cluster.local)


class TestRedirect:
    """Tests for AppRedirector.redirect()."""

    @pytest.mark.asyncio
    async def test_rewrites_and_restarts(self, sim, make_services):
        services = make_services("idp02")

        url = await services.redirector.redirect(services.cluster.local, "10.10.0.12")

        assert url == "jdbc:postgresql://10.10.0.12/keycloak"
        assert sim.nodes["idp02"].db_host == "10.10.0.12"
        assert sim.mutated("idp02") == ["write /opt/keycloak/conf/keycloak.conf", "restart keycloak"]

    @pytest.mark.asyncio
    async def test_restarts_even_when_unchanged(self, sim, make_services):
        services = make_services("idp02")

        await services.redirector.redirect(services.cluster.local, "idp01.outliertechnology.co.uk")

        assert "restart keycloak" in sim.mutated("idp02")

    @pytest.mark.asyncio
    async def test_remote_application(self, sim, make_services):
        services = make_services("idp02")

        await services.redirector.redirect(services.cluster.node("idp01"), "idp02.outliertechnology.co.uk")

        assert sim.nodes["idp01"].db_host == "idp02.outliertechnology.co.uk"
        assert sim.mutated("idp02") == []

    @pytest.mark.asyncio
    async def test_host_unreachable(self, sim, make_services):
        sim.nodes["idp01"].reachable = False
        services = make_services("idp02")

        with pytest.raises(RedirectFailed, match="redirect-app failed on idp01"):
            await services.redirector.redirect(services.cluster.node("idp01"), "x")

    @pytest.mark.asyncio
    async def test_read_db_url(self, make_services):
        services = make_services("idp02")
        assert (
            await services.redirector.read_db_url(services.cluster.local)
            == "jdbc:postgresql://idp01.outliertechnology.co.uk/keycloak"
        )


class TestReadiness:
    """Tests for the readiness poll."""

    def _redirector(self, services, handler, attempts=3):
        services.cluster.config.app.readiness_attempts = attempts
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return AppRedirector(
            services.redirector.runtime,
            services.cluster,
            services.db,
            client=client,
            sleep=no_sleep,
        )

    @pytest.mark.asyncio
    async def test_polls_until_ready(self, make_services):
        services = make_services("idp02")
        responses = iter([503, 503, 200])
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(next(responses))

        await self._redirector(services, handler).wait_ready(services.cluster.local)

        assert len(seen) == 3
        assert seen[0] == "http://idp02.outliertechnology.co.uk:9000/health/ready"

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self, make_services):
        services = make_services("idp02")
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200)

        await self._redirector(services, handler).wait_ready(services.cluster.local)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, make_services):
        services = make_services("idp02")

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RedirectFailed) as exc_info:
            await self._redirector(services, handler, attempts=4).wait_ready(
                services.cluster.local, "jdbc:postgresql://x/keycloak"
            )

        assert "not ready after 4 attempts" in str(exc_info.value)
        assert exc_info.value.observed["db-url"] == "jdbc:postgresql://x/keycloak"
        assert exc_info.value.observed["readiness"].startswith("ConnectError")
