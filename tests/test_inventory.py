"""
Tests for inventory loading.
"""

import pytest

from netbackup.inventory import DeviceRecord, InventoryError, inventory_from_dict, load_inventory

INVENTORY_YAML = """
devices:
  - device_id: core1
    host: 10.0.0.1
    script: cisco_ios
    username: backup
    password: secret
    enable_password: enable
  - device_id: 1042
    host: 10.0.0.2
    script: mikrotik_routeros
    protocol: TELNET
    variables:
      export_verbose: true
tasks:
  - name: nightly
    devices: [core1, 1042]
    schedule: "0 2 * * *"
  - name: manual
    devices: [core1]
"""


class TestInventory:
    """Test devices and tasks."""

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "inventory.yaml"
        path.write_text(INVENTORY_YAML)

        inventory = load_inventory(path)

        core = inventory.get_device("core1")
        assert core.port == 22
        mikrotik = inventory.get_device("1042")
        assert mikrotik.protocol == "telnet"
        assert mikrotik.port == 23
        assert inventory.task_devices("nightly") == ["core1", "1042"]
        assert [t.name for t in inventory.scheduled_tasks()] == ["nightly"]
        assert inventory.task_devices("missing") is None

    def test_template_variables(self):
        device = DeviceRecord("r1", "10.0.0.1", "cisco_ios", username="u", password="p",
                              variables={"export_verbose": True})

        variables = device.template_variables()

        assert variables["protocol"] == "ssh"
        assert variables["enable_password"] is None
        assert variables["export_verbose"] is True

    def test_duplicate_device(self):
        data = {"devices": [
            {"device_id": "r1", "host": "a", "script": "s"},
            {"device_id": "r1", "host": "b", "script": "s"},
        ]}
        with pytest.raises(InventoryError, match="Duplicate device"):
            inventory_from_dict(data)

    def test_unsupported_protocol(self):
        with pytest.raises(InventoryError, match="unsupported protocol"):
            DeviceRecord("r1", "10.0.0.1", "cisco_ios", protocol="serial")

    def test_unknown_field(self):
        with pytest.raises(InventoryError, match="Invalid device entry"):
            inventory_from_dict({"devices": [{"device_id": "r1", "host": "a", "script": "s", "vendor": "x"}]})

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "inventory.yaml"
        path.write_text("- core1\n- core2\n")

        with pytest.raises(InventoryError):
            load_inventory(path)
