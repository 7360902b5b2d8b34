"""Vendor handlers and the device-type registry."""
from ..errors import UnknownDeviceType
from .base import Step, TerminalBlock, VendorHandler
from .cisco_ios import CiscoIOSHandler, CiscoIOSXEHandler
from .cisco_nxos import CiscoNXOSHandler
from .juniper_junos import JuniperJunosHandler

__all__ = [
    "VendorHandler",
    "TerminalBlock",
    "Step",
    "CiscoIOSHandler",
    "CiscoIOSXEHandler",
    "CiscoNXOSHandler",
    "JuniperJunosHandler",
    "DEVICE_TYPES",
    "get_handler",
]

# Device type registry
DEVICE_TYPES: dict[str, type[VendorHandler]] = {
    "cisco_ios": CiscoIOSHandler,
    "cisco_iosxe": CiscoIOSXEHandler,
    "cisco_nxos": CiscoNXOSHandler,
    "juniper_junos": JuniperJunosHandler,
}

_instances: dict[str, VendorHandler] = {}


def get_handler(device_type: str) -> VendorHandler:
    """Resolve a device-type tag to its (shared, stateless) handler."""
    tag = (device_type or "").lower()
    handler = _instances.get(tag)
    if handler is not None:
        return handler
    handler_class = DEVICE_TYPES.get(tag)
    if handler_class is None:
        raise UnknownDeviceType(
            f"Unknown device type: {device_type!r}",
            details={"supported": sorted(DEVICE_TYPES)},
        )
    handler = _instances[tag] = handler_class()
    return handler
