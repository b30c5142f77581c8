"""Error hierarchy for snapshot backup and restore."""

from typing import List, Optional, Sequence


class SnapshotError(Exception):
    """Base exception for snapshot operations."""
    pass


class ConfigurationError(SnapshotError):
    """Configuration is incomplete for the requested operation."""
    pass


class MissingDependencyError(SnapshotError):
    """A required external tool is not installed."""

    def __init__(self, command: str):
        super().__init__(f"Missing dependency: {command}")
        self.command = command


class NotFoundError(SnapshotError):
    """Something the run needs does not exist."""
    pass


class SnapshotNotFoundError(NotFoundError):
    """No snapshot is available in the store."""

    def __init__(self, location: str):
        super().__init__(f"No backups found under {location}/")
        self.location = location


class PayloadNotFoundError(NotFoundError):
    """Payload file is missing from a snapshot archive."""

    def __init__(self, payload_name: str, archive_name: str, entries: Sequence[str]):
        self.payload_name = payload_name
        self.archive_name = archive_name
        self.entries: List[str] = list(entries)
        listing = "\n".join(f"  {entry}" for entry in self.entries) or "  (archive is empty)"
        super().__init__(
            f"Could not find {payload_name} inside {archive_name}\n"
            f"First {len(self.entries)} entries for debugging:\n{listing}"
        )


class VerificationError(SnapshotError):
    """Checksum record does not match the archive."""
    pass


class TransportError(SnapshotError):
    """Object storage operation failed."""
    pass


class ExtractionError(SnapshotError):
    """Normalized payload is missing after extraction."""
    pass


class ExportError(SnapshotError):
    """A datastore dump produced an unusable file."""
    pass


class CommandError(SnapshotError):
    """External command exited with a non-zero status."""

    def __init__(self, command: str, returncode: int, stderr: Optional[str] = None):
        message = f"Command exited with code {returncode}: {command}"
        if stderr:
            message = f"{message}\n{stderr}"
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
