"""Backup storage for configuration snapshots."""
from .store import (
    BackupStore,
    FileBackupStore,
    InMemoryBackupStore,
    compute_checksum,
)

__all__ = ["BackupStore", "FileBackupStore", "InMemoryBackupStore", "compute_checksum"]
