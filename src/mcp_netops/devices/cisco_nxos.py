"""Cisco NX-OS handler.

Ordinary configuration is direct-apply like IOS, but NX-OS keeps named
checkpoints of the running configuration and can roll back to one
atomically.

Command Reference:
- checkpoint <name>                          : Save a named restore point
- rollback running-config checkpoint <name>  : Restore it
- no checkpoint <name>                       : Delete it
- show running-config [| section X]          : Running configuration
- show version / show ip interface brief
"""
import re
from typing import Any, Optional

from ..errors import ConfigValidationError
from .cisco_common import CiscoHandler

CHECKPOINT_NAME = re.compile(r"^[A-Za-z0-9_\-]{1,80}$")


class CiscoNXOSHandler(CiscoHandler):
    """Cisco NX-OS."""

    device_type = "cisco_nxos"
    checkpoints = True
    indent_step = 2

    setup_commands = ("terminal length 0", "terminal width 511")

    ERROR_PATTERNS = CiscoHandler.ERROR_PATTERNS + [
        r"^ERROR:",
        r"^Syntax error while parsing",
        r"^Rollback Status\s*:\s*Failure",
        r"^Checkpoint .* failed",
    ]

    VOLATILE_PATTERNS = [
        r"^!Command:",
        r"^!Running configuration last done at",
        r"^!Time:",
        r"^!No configuration change since last restart",
    ]

    # Exec words are accepted in config mode on NX-OS
    EXEC_WORDS = ()

    def checkpoint(self, name: str) -> list[str]:
        if not CHECKPOINT_NAME.match(name):
            raise ConfigValidationError(f"Invalid checkpoint name: {name!r}")
        return [f"checkpoint {name}"]

    def delete_checkpoint(self, name: str) -> list[str]:
        if not CHECKPOINT_NAME.match(name):
            raise ConfigValidationError(f"Invalid checkpoint name: {name!r}")
        return [f"no checkpoint {name}"]

    def rollback(self, checkpoint: Optional[str] = None) -> list[str]:
        if not checkpoint:
            raise ConfigValidationError("NX-OS rollback needs a checkpoint name")
        return [f"rollback running-config checkpoint {checkpoint}"]

    def parse_version(self, output: str) -> Optional[dict[str, Any]]:
        match = (
            re.search(r"NXOS: version (\S+)", output)
            or re.search(r"system:\s+version (\S+)", output)
        )
        if not match:
            return None
        info: dict[str, Any] = {"version": match.group(1)}
        hostname = re.search(r"Device name:\s*(\S+)", output)
        if hostname:
            info["hostname"] = hostname.group(1)
        uptime = re.search(r"Kernel uptime is (.+)$", output, re.MULTILINE)
        if uptime:
            info["uptime"] = uptime.group(1).strip()
        model = re.search(r"cisco (Nexus\s?\S+(?: \S+)?) [Cc]hassis", output)
        if model:
            info["model"] = model.group(1)
        return info

    def parse_interfaces(self, output: str) -> Optional[dict[str, Any]]:
        """Parse ``show ip interface brief``."""
        if not re.search(r"^Interface\s+IP Address\s+Interface Status", output, re.MULTILINE):
            return None
        row = re.compile(
            r"^(\S+)\s+(\d+\.\d+\.\d+\.\d+|unassigned)\s+protocol-(\w+)/link-(\w+)/admin-(\w+)"
        )
        interfaces = []
        for line in output.split("\n"):
            match = row.match(line.strip())
            if not match:
                continue
            name, address, protocol, _link, admin = match.groups()
            interfaces.append({
                "name": name,
                "address": None if address == "unassigned" else address,
                "admin": admin,
                "oper": protocol,
            })
        return {"interfaces": interfaces}
