"""Core settings loaded from the environment.

Environment Variables:
    NETOPS_BACKOFF_BASE: First reconnect delay in seconds (default: 1)
    NETOPS_BACKOFF_FACTOR: Delay multiplier per attempt (default: 2)
    NETOPS_BACKOFF_CAP: Maximum reconnect delay (default: 30)
    NETOPS_BACKOFF_JITTER: Relative jitter, 0.2 means +/-20% (default: 0.2)
    NETOPS_CONNECT_ATTEMPTS: Session-open attempts before failing (default: 4)
    NETOPS_ACQUIRE_TIMEOUT: Seconds to wait for a free session (default: 30)
    NETOPS_CONFLICT_POLICY: block | reject (default: block)
    NETOPS_SWEEP_INTERVAL: Confirm-deadline sweep period (default: 1)
    NETOPS_BACKUP_BEFORE_APPLY: Restore point before direct-apply changes (default: true)
    NETOPS_MAX_RESTORE_POINTS: Restore points kept per device (default: 5)
    NETOPS_IO_WORKERS: Threads for blocking transport I/O (default: 32)
    NETOPS_BACKUP_DIR: Directory of the file backup store (default: ~/.netops/backups)
"""
import os
from dataclasses import dataclass, fields, replace
from enum import Enum
from pathlib import Path
from typing import Optional

DEFAULT_HOME = Path.home() / ".netops"


class ConflictPolicy(str, Enum):
    """What happens when another caller hits a device with an open transaction."""
    BLOCK = "block"     # wait in the pool until the transaction ends
    REJECT = "reject"   # fail immediately with TransactionConflict


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class CoreSettings:
    """Tunables shared by the pool, executor and transaction engine."""
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_cap: float = 30.0
    backoff_jitter: float = 0.2
    connect_attempts: int = 4
    acquire_timeout: float = 30.0
    conflict_policy: ConflictPolicy = ConflictPolicy.BLOCK
    sweep_interval: float = 1.0
    backup_before_apply: bool = True
    max_restore_points: int = 5
    io_workers: int = 32
    backup_dir: Path = DEFAULT_HOME / "backups"

    @classmethod
    def from_env(cls) -> "CoreSettings":
        env = os.environ
        return cls(
            backoff_base=float(env.get("NETOPS_BACKOFF_BASE", "1")),
            backoff_factor=float(env.get("NETOPS_BACKOFF_FACTOR", "2")),
            backoff_cap=float(env.get("NETOPS_BACKOFF_CAP", "30")),
            backoff_jitter=float(env.get("NETOPS_BACKOFF_JITTER", "0.2")),
            connect_attempts=int(env.get("NETOPS_CONNECT_ATTEMPTS", "4")),
            acquire_timeout=float(env.get("NETOPS_ACQUIRE_TIMEOUT", "30")),
            conflict_policy=ConflictPolicy(env.get("NETOPS_CONFLICT_POLICY", "block").lower()),
            sweep_interval=float(env.get("NETOPS_SWEEP_INTERVAL", "1")),
            backup_before_apply=_env_bool("NETOPS_BACKUP_BEFORE_APPLY", True),
            max_restore_points=int(env.get("NETOPS_MAX_RESTORE_POINTS", "5")),
            io_workers=int(env.get("NETOPS_IO_WORKERS", "32")),
            backup_dir=Path(env.get("NETOPS_BACKUP_DIR", str(DEFAULT_HOME / "backups"))),
        )

    def merged(self, overrides: Optional[dict]) -> "CoreSettings":
        """Return a copy with values from an inventory ``settings:`` block."""
        if not overrides:
            return self
        changes = {}
        for f in fields(self):
            if f.name not in overrides:
                continue
            value = overrides[f.name]
            if f.name == "conflict_policy":
                value = ConflictPolicy(str(value).lower())
            elif f.name == "backup_dir":
                value = Path(value).expanduser()
            changes[f.name] = value
        return replace(self, **changes)
