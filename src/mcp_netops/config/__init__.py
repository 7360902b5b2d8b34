"""Inventory and runtime settings."""
from .inventory import DeviceInventory
from .settings import ConflictPolicy, CoreSettings

__all__ = ["DeviceInventory", "ConflictPolicy", "CoreSettings"]
