"""Backup and restore for the platform's MySQL and MongoDB datastores."""

from .manager import BackupManager, RestoreManager
from .store import SnapshotStore

__all__ = ["BackupManager", "RestoreManager", "SnapshotStore"]
