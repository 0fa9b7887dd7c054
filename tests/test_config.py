"""Tests for cluster map loading and local-node resolution."""

from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from conftest import cluster_config_data
from idp_failover.config import ClusterConfig, load_cluster_config, resolve_cluster
from idp_failover.exceptions import ConfigError


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "cluster.yaml"
    path.write_text(yaml.safe_dump(cluster_config_data()))
    return path


class TestLoadClusterConfig:
    """Tests for load_cluster_config()."""

    def test_loads_file(self, config_file):
        config = load_cluster_config(config_file)

        assert sorted(config.nodes) == ["idp01", "idp02"]
        assert config.nodes["idp01"].peer == "idp02"
        assert [e.name for e in config.edges] == ["sec001", "sec002"]
        assert config.database.data_path == "/var/lib/postgresql/16/main"
        assert config.database.bin_dir == "/usr/lib/postgresql/16/bin"

    def test_path_from_environment(self, config_file, monkeypatch):
        monkeypatch.setenv("IDP_FAILOVER_CONFIG", str(config_file))
        assert load_cluster_config().ssh_user == "sysadmin"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read cluster config"):
            load_cluster_config(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "cluster.yaml"
        path.write_text("nodes: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_cluster_config(path)

    def test_schema_violation(self, tmp_path):
        path = tmp_path / "cluster.yaml"
        path.write_text("runtime: podman\nnodes: {}\n")
        with pytest.raises(ConfigError, match="Invalid cluster config"):
            load_cluster_config(path)


class TestClusterConfigValidation:
    """Model validators of ClusterConfig."""

    def test_exactly_two_nodes(self):
        data = cluster_config_data()
        data["nodes"]["idp03"] = {"fqdn": "idp03", "peer": "idp01", "ssh_host": "idp003"}
        with pytest.raises(ValueError, match="Exactly two nodes"):
            ClusterConfig.model_validate(data)

    def test_peers_symmetric(self):
        data = cluster_config_data()
        data["nodes"]["idp01"]["peer"] = "idp01"
        with pytest.raises(ValueError, match="names itself as peer"):
            ClusterConfig.model_validate(data)

    def test_unknown_peer(self):
        data = cluster_config_data()
        data["nodes"]["idp01"]["peer"] = "idp09"
        with pytest.raises(ValueError, match="unknown peer idp09"):
            ClusterConfig.model_validate(data)

    def test_duplicate_edges(self):
        data = cluster_config_data()
        data["edges"][1]["name"] = "sec001"
        with pytest.raises(ValueError, match="Duplicate edge names"):
            ClusterConfig.model_validate(data)

    def test_probe_timeout_bounds(self):
        data = cluster_config_data()
        data["timeouts"]["probe"] = 30
        with pytest.raises(ValueError, match="Must be between 5 and 10 seconds"):
            ClusterConfig.model_validate(data)


class TestResolveCluster:
    """Tests for resolve_cluster()."""

    def test_explicit_node(self, cluster_config):
        cluster = resolve_cluster(cluster_config, "idp02")

        assert cluster.local.id == "idp02"
        assert cluster.peer.id == "idp01"
        assert cluster.peer.fqdn == "idp01.outliertechnology.co.uk"
        assert cluster.host_for(cluster.local) is None
        assert cluster.host_for(cluster.peer) == "idp001"

    @pytest.mark.parametrize("hostname", ["idp001", "idp001.outliertechnology.co.uk", "idp01"])
    def test_from_hostname(self, cluster_config, hostname):
        with patch("idp_failover.config.socket.gethostname", return_value=hostname):
            assert resolve_cluster(cluster_config).local.id == "idp01"

    def test_from_alias(self, cluster_config):
        cluster_config.nodes["idp02"].aliases = ["keycloak-b"]
        with patch("idp_failover.config.socket.gethostname", return_value="keycloak-b"):
            assert resolve_cluster(cluster_config).local.id == "idp02"

    def test_unknown_host(self, cluster_config):
        with patch("idp_failover.config.socket.gethostname", return_value="sec001"):
            with pytest.raises(ConfigError, match="Unknown host: sec001"):
                resolve_cluster(cluster_config)

    def test_unknown_node(self, cluster_config):
        with pytest.raises(ConfigError, match="Unknown node: idp07"):
            resolve_cluster(cluster_config, "idp07")

    def test_node_lookup(self, cluster_config):
        cluster = resolve_cluster(cluster_config, "idp01")
        assert cluster.node("idp02").ssh_host == "idp002"
        with pytest.raises(ConfigError):
            cluster.node("sec001")


class TestExampleConfig:
    """The example map shipped with the project."""

    def test_example_is_valid(self):
        path = Path(__file__).resolve().parents[1] / "config" / "cluster.example.yaml"
        config = load_cluster_config(path)

        assert config.runtime == "lxd"
        assert config.nodes["idp02"].aliases == ["idp002.outliertechnology.co.uk"]
        assert config.edges[1].config_path.endswith("/dynamic/keycloak.yml")
