"""Device inventory management from YAML configuration."""
import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import Optional

import yaml

from ..errors import ConfigValidationError, DeviceNotFound
from ..models import ConnectionOptions, Device

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = ("device_id", "device_type")


class DeviceInventory:
    """Registry of managed devices, optionally seeded from ``devices.yaml``.

    ```yaml
    defaults:
      protocol: ssh
      options:
        timeout: 30
        max_sessions: 2

    settings:
      conflict_policy: reject

    devices:
      edge-1:
        type: juniper_junos
        host: 10.0.0.1
        credential_ref: lab
      core-1:
        type: cisco_ios
        host: 10.0.0.2
        credential_ref: lab
    ```
    """

    def __init__(self, config_path: Optional[str] = None, load: bool = True):
        self.config_path = config_path
        self._devices: dict[str, Device] = {}
        self._settings: dict = {}
        if load:
            self.config_path = config_path or self._find_config()
            if self.config_path:
                self._load_config()

    @staticmethod
    def _find_config() -> Optional[str]:
        """Find the devices.yaml config file, if any."""
        search_paths = [
            Path.cwd() / "configs" / "devices.yaml",
            Path.cwd() / "devices.yaml",
            Path.home() / ".config" / "netops" / "devices.yaml",
            Path("/etc/netops/devices.yaml"),
        ]
        env_path = os.environ.get("NETOPS_INVENTORY")
        if env_path:
            search_paths.insert(0, Path(env_path))

        for path in search_paths:
            if path.exists():
                return str(path)
        return None

    def _load_config(self) -> None:
        """Load the YAML configuration."""
        with open(self.config_path) as f:
            config = yaml.safe_load(f) or {}

        defaults = config.get("defaults", {})
        self._settings = dict(config.get("settings") or {})

        for device_id, device_config in (config.get("devices") or {}).items():
            merged = {**defaults, **device_config}
            merged["options"] = {
                **(defaults.get("options") or {}),
                **(device_config.get("options") or {}),
            }
            try:
                self.register(Device.from_dict(device_id, merged))
            except (KeyError, ConfigValidationError) as e:
                logger.warning(f"Skipping invalid inventory entry {device_id}: {e}")

        logger.info(f"Loaded {len(self._devices)} devices from {self.config_path}")

    @property
    def settings(self) -> dict:
        """Raw ``settings:`` block from the inventory file."""
        return dict(self._settings)

    def register(self, device: Device) -> Device:
        """Add a device. Fails if the id is already registered."""
        if not device.device_id:
            raise ConfigValidationError("Device id must not be empty")
        if not device.device_type:
            raise ConfigValidationError("Device type must not be empty", device=device.device_id)
        if device.device_id in self._devices:
            raise ConfigValidationError("Device already registered", device=device.device_id)
        if device.options.max_sessions < 1:
            raise ConfigValidationError("max_sessions must be at least 1", device=device.device_id)
        self._devices[device.device_id] = device
        logger.debug(f"Registered {device.device_id} ({device.device_type})")
        return device

    def update(self, device_id: str, **changes) -> Device:
        """Edit a registered device. Identity and type are immutable."""
        current = self.get(device_id)
        for name in IMMUTABLE_FIELDS:
            if name in changes and changes[name] != getattr(current, name):
                raise ConfigValidationError(
                    f"Field '{name}' is immutable once registered", device=device_id
                )
            changes.pop(name, None)
        if isinstance(changes.get("options"), dict):
            merged = {**current.options.to_dict(), **changes["options"]}
            changes["options"] = ConnectionOptions.from_dict(merged)
        updated = replace(current, **changes)
        self._devices[device_id] = updated
        logger.info(f"Updated {device_id}: {sorted(changes)}")
        return updated

    def deregister(self, device_id: str) -> Device:
        """Remove a device and return its last definition."""
        device = self.get(device_id)
        del self._devices[device_id]
        logger.info(f"Deregistered {device_id}")
        return device

    def get(self, device_id: str) -> Device:
        try:
            return self._devices[device_id]
        except KeyError:
            raise DeviceNotFound("Unknown device", device=device_id) from None

    def get_device_ids(self) -> list[str]:
        return list(self._devices)

    def list_devices(self) -> list[Device]:
        return list(self._devices.values())

    def by_type(self, device_type: str) -> list[Device]:
        """Devices filtered by type tag."""
        return [d for d in self._devices.values() if d.device_type == device_type]

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)
