"""Tests for the device inventory."""
import pytest
import yaml

from mcp_netops import errors
from mcp_netops.config.inventory import DeviceInventory
from mcp_netops.models import ConnectionOptions, Device


@pytest.fixture
def inventory_file(tmp_path):
    path = tmp_path / "devices.yaml"
    path.write_text(yaml.safe_dump({
        "defaults": {
            "protocol": "ssh",
            "credential_ref": "lab",
            "options": {"timeout": 20, "max_sessions": 3},
        },
        "settings": {"conflict_policy": "reject"},
        "devices": {
            "edge-1": {"type": "juniper_junos", "host": "10.0.0.1", "name": "Edge router"},
            "core-1": {
                "type": "Cisco_IOS",
                "host": "10.0.0.2",
                "protocol": "telnet",
                "options": {"timeout": 45},
            },
            "broken": {"type": "cisco_ios"},
        },
    }))
    return str(path)


class TestLoadFromYaml:
    """Seeding the registry from devices.yaml."""

    def test_devices_loaded_with_defaults(self, inventory_file):
        inv = DeviceInventory(inventory_file)

        edge = inv.get("edge-1")
        assert edge.device_type == "juniper_junos"
        assert edge.name == "Edge router"
        assert edge.port == 22
        assert edge.credential_ref == "lab"
        assert edge.options.timeout == 20
        assert edge.options.max_sessions == 3

    def test_device_overrides_merge_with_default_options(self, inventory_file):
        core = DeviceInventory(inventory_file).get("core-1")

        assert core.device_type == "cisco_ios"
        assert core.protocol == "telnet"
        assert core.port == 23
        assert core.options.timeout == 45
        assert core.options.max_sessions == 3

    def test_invalid_entry_is_skipped(self, inventory_file):
        inv = DeviceInventory(inventory_file)
        assert "broken" not in inv
        assert sorted(inv.get_device_ids()) == ["core-1", "edge-1"]

    def test_settings_block(self, inventory_file):
        assert DeviceInventory(inventory_file).settings == {"conflict_policy": "reject"}

    def test_env_path(self, inventory_file, monkeypatch, tmp_path):
        monkeypatch.setenv("NETOPS_INVENTORY", inventory_file)
        monkeypatch.chdir(tmp_path)
        assert len(DeviceInventory()) == 2

    def test_no_file_is_empty(self, monkeypatch, tmp_path):
        monkeypatch.delenv("NETOPS_INVENTORY", raising=False)
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(DeviceInventory, "_find_config", staticmethod(lambda: None))
        inv = DeviceInventory()
        assert inv.list_devices() == []


class TestRegistry:
    """Register, update and deregister at runtime."""

    @pytest.fixture
    def inv(self):
        inv = DeviceInventory(load=False)
        inv.register(Device("edge-1", "10.0.0.1", "juniper_junos", "lab"))
        return inv

    def test_duplicate_register(self, inv):
        with pytest.raises(errors.ConfigValidationError):
            inv.register(Device("edge-1", "10.0.0.9", "juniper_junos", "lab"))

    def test_zero_sessions_rejected(self, inv):
        device = Device("core-1", "10.0.0.2", "cisco_ios", "lab", options=ConnectionOptions(max_sessions=0))
        with pytest.raises(errors.ConfigValidationError):
            inv.register(device)

    def test_update_host_and_options(self, inv):
        updated = inv.update("edge-1", host="10.0.0.99", options={"timeout": 5})

        assert updated.host == "10.0.0.99"
        assert updated.options.timeout == 5
        assert updated.options.max_sessions == 2
        assert inv.get("edge-1") is updated

    def test_identity_and_type_are_immutable(self, inv):
        with pytest.raises(errors.ConfigValidationError):
            inv.update("edge-1", device_type="cisco_ios")
        with pytest.raises(errors.ConfigValidationError):
            inv.update("edge-1", device_id="edge-2")
        # Unchanged values are accepted
        assert inv.update("edge-1", device_type="juniper_junos").device_type == "juniper_junos"

    def test_deregister(self, inv):
        removed = inv.deregister("edge-1")
        assert removed.device_id == "edge-1"
        with pytest.raises(errors.DeviceNotFound):
            inv.get("edge-1")

    def test_unknown_device(self, inv):
        with pytest.raises(errors.DeviceNotFound) as exc_info:
            inv.update("nope", host="x")
        assert exc_info.value.to_dict()["code"] == "DEVICE_NOT_FOUND"

    def test_by_type(self, inv):
        inv.register(Device("core-1", "10.0.0.2", "cisco_ios", "lab"))
        assert [d.device_id for d in inv.by_type("cisco_ios")] == ["core-1"]
