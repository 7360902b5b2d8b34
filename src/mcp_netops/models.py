"""Core data model: devices, command results and configuration snapshots."""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


class DeviceType(str, Enum):
    """Device-type tags with a registered vendor handler."""
    CISCO_IOS = "cisco_ios"
    CISCO_IOSXE = "cisco_iosxe"
    CISCO_NXOS = "cisco_nxos"
    JUNIPER_JUNOS = "juniper_junos"


class ConfigFormat(str, Enum):
    """Payload/snapshot format tag."""
    TEXT = "text"
    STRUCTURED = "structured"


@dataclass(frozen=True)
class ConnectionOptions:
    """Per-device connection tuning."""
    timeout: float = 30           # default command timeout (seconds)
    connect_timeout: float = 15
    keepalive: float = 60         # idle seconds before a liveness probe, 0 disables
    max_sessions: int = 2
    idle_ttl: float = 300
    enable_required: bool = True

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ConnectionOptions":
        data = dict(data or {})
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Device:
    """A managed device.

    ``device_id`` and ``device_type`` never change after registration;
    ``credential_ref`` is an opaque handle resolved by the credential store.
    """
    device_id: str
    host: str
    device_type: str
    credential_ref: str
    port: int = 22
    protocol: str = "ssh"
    name: str = ""
    options: ConnectionOptions = field(default_factory=ConnectionOptions)

    @classmethod
    def from_dict(cls, device_id: str, data: dict) -> "Device":
        """Build from an inventory entry."""
        protocol = data.get("protocol", "ssh")
        return cls(
            device_id=device_id,
            host=data["host"],
            device_type=str(data.get("type") or data.get("device_type", "")).lower(),
            credential_ref=data.get("credential_ref", device_id),
            port=int(data.get("port", 23 if protocol == "telnet" else 22)),
            protocol=protocol,
            name=data.get("name", ""),
            options=ConnectionOptions.from_dict(data.get("options")),
        )

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "protocol": self.protocol,
            "type": self.device_type,
            "credential_ref": self.credential_ref,
            "options": self.options.to_dict(),
        }


@dataclass
class CommandResult:
    """Result of one command run on a device."""
    command: str
    output: str = ""
    success: bool = True
    device_id: str = ""
    error: Optional[str] = None
    structured: Optional[dict[str, Any]] = None
    elapsed_ms: float = 0.0
    raw: str = ""

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "output": self.output,
            "success": self.success,
            "device_id": self.device_id,
            "error": self.error,
            "structured": self.structured,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }

    def __repr__(self) -> str:
        status = "OK" if self.success else "FAILED"
        return f"CommandResult({status}, device={self.device_id}, cmd={self.command[:40]!r})"


@dataclass
class BatchResult:
    """Ordered results of a command batch run on one session."""
    device_id: str
    results: list[CommandResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    best_effort: bool = False

    @property
    def success(self) -> bool:
        return not self.skipped and all(r.success for r in self.results)

    @property
    def failed(self) -> list[CommandResult]:
        return [r for r in self.results if not r.success]

    @property
    def elapsed_ms(self) -> float:
        return sum(r.elapsed_ms for r in self.results)

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "success": self.success,
            "best_effort": self.best_effort,
            "results": [r.to_dict() for r in self.results],
            "skipped": self.skipped,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


Payload = Union[str, dict[str, Any]]


@dataclass
class ConfigurationSnapshot:
    """Full or partial device configuration captured at a point in time."""
    device_id: str
    device_type: str
    content: Payload
    format: ConfigFormat = ConfigFormat.TEXT
    section: Optional[str] = None
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    description: str = ""
    backup_id: Optional[str] = None

    @property
    def is_partial(self) -> bool:
        return self.section is not None

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "device_type": self.device_type,
            "content": self.content,
            "format": self.format.value,
            "section": self.section,
            "captured_at": self.captured_at.isoformat(),
            "description": self.description,
            "backup_id": self.backup_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConfigurationSnapshot":
        captured_at = data.get("captured_at")
        if isinstance(captured_at, str):
            captured_at = datetime.fromisoformat(captured_at)
        return cls(
            device_id=data["device_id"],
            device_type=data["device_type"],
            content=data["content"],
            format=ConfigFormat(data.get("format", ConfigFormat.TEXT.value)),
            section=data.get("section"),
            captured_at=captured_at or datetime.now(timezone.utc),
            description=data.get("description", ""),
            backup_id=data.get("backup_id"),
        )
