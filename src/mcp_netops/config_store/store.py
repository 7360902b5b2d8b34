"""Backup store for configuration snapshots.

A backup is written once and never overwritten; it can only be deleted.
The core only depends on the ``BackupStore`` interface; two reference
implementations are provided.

File layout (``FileBackupStore``)::

    <backup_dir>/
    ├── edge-1/
    │   ├── edge-1-20240102T030405-1a2b3c4d.yaml
    │   └── ...
    └── core-1/
        └── ...
"""
import asyncio
import hashlib
import json
import logging
import re
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from ..errors import BackupNotFound, ConfigError
from ..models import ConfigurationSnapshot, Payload

logger = logging.getLogger(__name__)

BACKUP_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")


def compute_checksum(content: Payload) -> str:
    """SHA256 of the snapshot content, serialized deterministically."""
    content_str = json.dumps(content, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(content_str.encode()).hexdigest()


def new_backup_id(snapshot: ConfigurationSnapshot) -> str:
    device = re.sub(r"[^A-Za-z0-9_.\-]", "_", snapshot.device_id)
    return f"{device}-{snapshot.captured_at:%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:8]}"


class BackupStore(ABC):
    """Durable storage for configuration snapshots keyed by opaque identifiers."""

    @abstractmethod
    async def put(self, snapshot: ConfigurationSnapshot) -> str:
        """Persist ``snapshot`` and return its new backup identifier."""

    @abstractmethod
    async def get(self, backup_id: str) -> ConfigurationSnapshot:
        """Fetch a snapshot. Raises ``BackupNotFound``."""

    @abstractmethod
    async def list(self, device_id: Optional[str] = None) -> list[ConfigurationSnapshot]:
        """Snapshots, newest first, optionally for one device."""

    @abstractmethod
    async def delete(self, backup_id: str) -> None:
        """Remove a snapshot. Raises ``BackupNotFound``."""


class InMemoryBackupStore(BackupStore):
    """Process-local store, for tests and embedding."""

    def __init__(self):
        self._snapshots: dict[str, ConfigurationSnapshot] = {}
        self._lock = asyncio.Lock()

    async def put(self, snapshot: ConfigurationSnapshot) -> str:
        async with self._lock:
            backup_id = new_backup_id(snapshot)
            while backup_id in self._snapshots:
                backup_id = new_backup_id(snapshot)
            stored = ConfigurationSnapshot.from_dict({**snapshot.to_dict(), "backup_id": backup_id})
            self._snapshots[backup_id] = stored
        snapshot.backup_id = backup_id
        return backup_id

    async def get(self, backup_id: str) -> ConfigurationSnapshot:
        try:
            stored = self._snapshots[backup_id]
        except KeyError:
            raise BackupNotFound("Unknown backup", details={"backup_id": backup_id}) from None
        return ConfigurationSnapshot.from_dict(stored.to_dict())

    async def list(self, device_id: Optional[str] = None) -> list[ConfigurationSnapshot]:
        snapshots = [
            s for s in self._snapshots.values()
            if device_id is None or s.device_id == device_id
        ]
        return sorted(snapshots, key=lambda s: s.captured_at, reverse=True)

    async def delete(self, backup_id: str) -> None:
        async with self._lock:
            if self._snapshots.pop(backup_id, None) is None:
                raise BackupNotFound("Unknown backup", details={"backup_id": backup_id})


class _BlockDumper(yaml.SafeDumper):
    """Dump multi-line strings as literal blocks where YAML allows it."""


def _str_representer(dumper: yaml.SafeDumper, data: str) -> Any:
    style = "|" if "\n" in data else None
    return dumper.represent_scalar("tag:yaml.org,2002:str", data, style=style)


_BlockDumper.add_representer(str, _str_representer)


class FileBackupStore(BackupStore):
    """One YAML document per backup with a metadata header and checksum.

    File access runs on ``io_executor`` (the default loop executor when
    omitted) so the event loop never blocks on disk.
    """

    def __init__(self, base_dir: Path, io_executor: Optional[Executor] = None):
        self.base_dir = Path(base_dir).expanduser()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._io = io_executor
        logger.debug(f"Backup store at {self.base_dir}")

    async def _run(self, func: Callable, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._io, func, *args)

    def _path_for(self, device_id: str, backup_id: str) -> Path:
        device_dir = re.sub(r"[^A-Za-z0-9_.\-]", "_", device_id)
        return self.base_dir / device_dir / f"{backup_id}.yaml"

    def _find(self, backup_id: str) -> Path:
        if not BACKUP_ID_PATTERN.match(backup_id) or ".." in backup_id:
            raise BackupNotFound("Malformed backup id", details={"backup_id": backup_id})
        matches = list(self.base_dir.glob(f"*/{backup_id}.yaml"))
        if not matches:
            raise BackupNotFound("Unknown backup", details={"backup_id": backup_id})
        return matches[0]

    def _write(self, path: Path, document: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # "x" refuses to overwrite an identifier that already exists
        with open(path, "x", encoding="utf-8") as f:
            yaml.dump(document, f, Dumper=_BlockDumper, default_flow_style=False, sort_keys=False)

    async def put(self, snapshot: ConfigurationSnapshot) -> str:
        backup_id = new_backup_id(snapshot)
        document = {
            **{k: v for k, v in snapshot.to_dict().items() if k != "content"},
            "backup_id": backup_id,
            "checksum": compute_checksum(snapshot.content),
            "content": snapshot.content,
        }
        await self._run(self._write, self._path_for(snapshot.device_id, backup_id), document)

        snapshot.backup_id = backup_id
        logger.info(f"Stored backup {backup_id} ({snapshot.device_id})")
        return backup_id

    def _load(self, path: Path) -> ConfigurationSnapshot:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        checksum = data.pop("checksum", "")
        if checksum != compute_checksum(data.get("content")):
            raise ConfigError(
                "Backup checksum mismatch",
                device=data.get("device_id"),
                details={"backup_id": data.get("backup_id"), "path": str(path)},
            )
        return ConfigurationSnapshot.from_dict(data)

    def _get(self, backup_id: str) -> ConfigurationSnapshot:
        return self._load(self._find(backup_id))

    async def get(self, backup_id: str) -> ConfigurationSnapshot:
        return await self._run(self._get, backup_id)

    def _list(self, device_id: Optional[str]) -> list[ConfigurationSnapshot]:
        if device_id is not None:
            pattern = f"{re.sub(r'[^A-Za-z0-9_.-]', '_', device_id)}/*.yaml"
        else:
            pattern = "*/*.yaml"
        snapshots = []
        for path in self.base_dir.glob(pattern):
            try:
                snapshots.append(self._load(path))
            except (ConfigError, yaml.YAMLError, KeyError) as e:
                logger.warning(f"Skipping unreadable backup {path}: {e}")
        return sorted(snapshots, key=lambda s: s.captured_at, reverse=True)

    async def list(self, device_id: Optional[str] = None) -> list[ConfigurationSnapshot]:
        return await self._run(self._list, device_id)

    def _delete(self, backup_id: str) -> None:
        self._find(backup_id).unlink()

    async def delete(self, backup_id: str) -> None:
        await self._run(self._delete, backup_id)
        logger.info(f"Deleted backup {backup_id}")
