"""Device transports."""
from concurrent.futures import Executor
from typing import Optional

from ..errors import ConnectionError
from ..models import Device
from .base import CLITransport, Transport, strip_ansi
from .ssh import SSHTransport
from .telnet import TelnetTransport

TRANSPORTS = {
    "ssh": SSHTransport,
    "telnet": TelnetTransport,
}


def create_transport(device: Device, io_executor: Optional[Executor] = None) -> Transport:
    """Build an unconnected transport for ``device`` from its protocol."""
    transport_class = TRANSPORTS.get(device.protocol.lower())
    if transport_class is None:
        raise ConnectionError(
            f"Unsupported protocol: {device.protocol}",
            device=device.device_id,
            details={"supported": sorted(TRANSPORTS)},
        )
    return transport_class(
        device.host,
        device.port,
        connect_timeout=device.options.connect_timeout,
        keepalive=device.options.keepalive,
        io_executor=io_executor,
    )


__all__ = [
    "Transport",
    "CLITransport",
    "SSHTransport",
    "TelnetTransport",
    "TRANSPORTS",
    "create_transport",
    "strip_ansi",
]
