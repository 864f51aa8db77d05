"""Tests for zonekeeper.config: defaults, env, YAML and flag precedence."""

from pathlib import Path

import pytest

from zonekeeper.config import ProvisionerConfig, from_env, load_config


def _write(tmp_path, text):
    p = tmp_path / "zk.yaml"
    p.write_text(text)
    return p


class TestDefaults:
    def test_defaults(self):
        cfg = ProvisionerConfig(project="p")
        assert cfg.lease_timeout == 600
        assert cfg.lease_tag_key == "lease-hold"
        assert cfg.resolved_kind_tag_value == "zonekeeper-volume"
        assert cfg.resolved_state_file == Path("/var/lib/zonekeeper/volume.json")

    def test_selector_tags(self):
        cfg = ProvisionerConfig(project="p", kind="address", id_tag_value="web")
        assert cfg.selector_tags("workers") == {
            "kind": "zonekeeper-address",
            "node-pool": "workers",
            "id": "web",
        }

    def test_create_params_drop_empty(self):
        cfg = ProvisionerConfig(project="p", volume_type="gp3", iops=0)
        assert cfg.create_params() == {"volume_type": "gp3", "size_gb": 300}

    def test_interface_create_params(self):
        cfg = ProvisionerConfig(provider="ec2", kind="interface", subnet_id="subnet-1", security_group_ids=["sg-1"])
        params = cfg.create_params()
        assert params["subnet_id"] == "subnet-1"
        assert params["security_group_ids"] == ["sg-1"]

    def test_attach_params(self):
        assert ProvisionerConfig(device_name="/dev/xvdf").attach_params() == {"device_name": "/dev/xvdf"}
        assert ProvisionerConfig().attach_params() == {}


class TestValidate:
    def test_gce_needs_project(self):
        with pytest.raises(ValueError, match="project"):
            ProvisionerConfig(provider="gce").validate()

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="kind"):
            ProvisionerConfig(provider="ec2", kind="bucket").validate()

    def test_non_positive_lease_timeout(self):
        with pytest.raises(ValueError, match="lease_timeout"):
            ProvisionerConfig(provider="ec2", lease_timeout=0).validate()

    def test_empty_tag_key(self):
        with pytest.raises(ValueError, match="lease_tag_key"):
            ProvisionerConfig(provider="ec2", lease_tag_key="").validate()

    def test_unknown_ec2_volume_type(self):
        with pytest.raises(ValueError, match="volume_type"):
            ProvisionerConfig(provider="ec2", volume_type="pd-ssd").validate()

    def test_gce_volume_type_is_free_form(self):
        assert ProvisionerConfig(project="p", volume_type="pd-ssd").validate().volume_type == "pd-ssd"


class TestPrecedence:
    def test_env(self):
        found = from_env({"ZONEKEEPER_LEASE_TIMEOUT": "120", "ZONEKEEPER_SECURITY_GROUP_IDS": "sg-1, sg-2", "OTHER": "x"})
        assert found == {"lease_timeout": 120.0, "security_group_ids": ["sg-1", "sg-2"]}

    def test_yaml_over_env(self, tmp_path):
        path = _write(tmp_path, "provider: ec2\nkind: address\npoll-interval: 2\n")
        cfg = load_config(path, environ={"ZONEKEEPER_KIND": "volume", "ZONEKEEPER_REGION": "eu-west-1"})
        assert cfg.kind == "address"
        assert cfg.region == "eu-west-1"
        assert cfg.poll_interval == 2.0

    def test_flags_over_yaml(self, tmp_path):
        path = _write(tmp_path, "provider: ec2\nlease_timeout: 300\n")
        cfg = load_config(path, {"lease_timeout": 900, "zone": None}, environ={})
        assert cfg.lease_timeout == 900.0
        assert cfg.zone == ""

    def test_unknown_yaml_key(self, tmp_path):
        path = _write(tmp_path, "provider: ec2\nleese_timeout: 300\n")
        with pytest.raises(ValueError, match="leese_timeout"):
            load_config(path, environ={})

    def test_yaml_must_be_mapping(self, tmp_path):
        path = _write(tmp_path, "- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config(path, environ={})

    def test_empty_yaml(self, tmp_path):
        path = _write(tmp_path, "")
        cfg = load_config(path, {"provider": "ec2"}, environ={})
        assert cfg.provider == "ec2"

    def test_missing_file(self, tmp_path):
        with pytest.raises(OSError):
            load_config(tmp_path / "nope.yaml", environ={})
