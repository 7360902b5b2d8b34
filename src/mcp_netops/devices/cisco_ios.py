"""Cisco IOS and IOS-XE handlers.

Classic IOS has no candidate configuration: every line entered in
``configure terminal`` is live immediately. There is no native rollback
either, so rollback is emulated by the transaction engine reapplying a
stored snapshot through a compensating diff.

Command Reference:
- show running-config [| section X] : Running configuration
- show version                     : Software version, uptime, model
- show ip interface brief          : Interface addressing and status
- terminal length 0                : Disable --More-- pagination
"""
import re
from typing import Any, Optional

from .cisco_common import CiscoHandler


class CiscoIOSHandler(CiscoHandler):
    """Cisco IOS (classic)."""

    device_type = "cisco_ios"

    VOLATILE_PATTERNS = [
        r"^Building configuration",
        r"^Current configuration\s*:",
        r"^! Last configuration change",
        r"^! NVRAM config last updated",
        r"^! No configuration change since last restart",
        r"^ntp clock-period",
    ]

    VERSION_PATTERN = re.compile(r"Cisco IOS Software.*?Version ([^\s,]+)", re.IGNORECASE)

    def normalize_config(self, text: str) -> str:
        normalized = super().normalize_config(text)
        lines = normalized.split("\n")
        if lines and lines[-1].strip() == "end":
            lines.pop()
        return "\n".join(lines).rstrip()

    def parse_version(self, output: str) -> Optional[dict[str, Any]]:
        match = self.VERSION_PATTERN.search(output)
        if not match:
            return None
        info: dict[str, Any] = {"version": match.group(1)}
        uptime = re.search(r"^(\S+) uptime is (.+)$", output, re.MULTILINE)
        if uptime:
            info["hostname"] = uptime.group(1)
            info["uptime"] = uptime.group(2).strip()
        model = re.search(r"^[Cc]isco (\S+) .*(?:processor|bytes of memory)", output, re.MULTILINE)
        if model:
            info["model"] = model.group(1)
        serial = re.search(r"Processor board ID (\S+)", output)
        if serial:
            info["serial"] = serial.group(1)
        return info

    def parse_interfaces(self, output: str) -> Optional[dict[str, Any]]:
        """Parse ``show ip interface brief``."""
        if not re.search(r"^Interface\s+IP-Address\s+OK\?", output, re.MULTILINE):
            return None
        row = re.compile(
            r"^(\S+)\s+(\S+)\s+(?:YES|NO)\s+\S+\s+(administratively down|up|down|deleted)\s+(\S+)\s*$"
        )
        interfaces = []
        for line in output.split("\n"):
            match = row.match(line.strip())
            if not match:
                continue
            name, address, status, protocol = match.groups()
            interfaces.append({
                "name": name,
                "address": None if address == "unassigned" else address,
                "admin": "down" if status.startswith("administratively") else "up",
                "oper": protocol,
            })
        return {"interfaces": interfaces}


class CiscoIOSXEHandler(CiscoIOSHandler):
    """Cisco IOS-XE. Same CLI contract as IOS for this core."""

    device_type = "cisco_iosxe"

    VERSION_PATTERN = re.compile(
        r"Cisco IOS[ -]XE Software,?\s+Version ([^\s,]+)|Cisco IOS Software.*?Version ([^\s,]+)",
        re.IGNORECASE,
    )

    def parse_version(self, output: str) -> Optional[dict[str, Any]]:
        info = super().parse_version(output)
        if info is None:
            return None
        match = self.VERSION_PATTERN.search(output)
        info["version"] = match.group(1) or match.group(2)
        return info
