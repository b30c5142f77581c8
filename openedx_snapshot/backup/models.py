"""Data models for backup/restore operations."""

import re
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator

_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")


class ChecksumRecord(BaseModel):
    """Detached SHA-256 record stored next to an archive."""

    digest: str = Field(..., description="SHA-256 hex digest of the archive bytes")
    filename: Optional[str] = Field(None, description="Archive base name")

    @field_validator("digest")
    @classmethod
    def check_digest(cls, v: str) -> str:
        v = v.lower()
        if not _HEX_DIGEST.match(v):
            raise ValueError(f"not a SHA-256 hex digest: {v!r}")
        return v

    @classmethod
    def parse(cls, text: str) -> "ChecksumRecord":
        """Parse `<digest>  <filename>` (sha256sum output, filename optional)."""
        fields = text.split()
        if not fields:
            raise ValueError("empty checksum record")
        filename = fields[1].lstrip("*") if len(fields) > 1 else None
        if filename:
            filename = Path(filename).name
        return cls(digest=fields[0], filename=filename)

    def render(self) -> str:
        return f"{self.digest}  {self.filename}\n" if self.filename else f"{self.digest}\n"


class BackupManifest(BaseModel):
    """Description of a snapshot, stored as manifest.json inside the archive."""

    snapshot_id: str = Field(..., description="Snapshot identifier (UTC timestamp)")
    created_at: datetime = Field(..., description="Backup creation timestamp")
    openedx_snapshot_version: str = Field(..., description="openedx-snapshot version")
    payloads: Dict[str, int] = Field(..., description="Payload file name to size in bytes")


class SnapshotMetadata(BaseModel):
    """Outcome of a backup run."""

    snapshot_id: str
    created_at: datetime
    archive_path: Path
    checksum_path: Path
    size_bytes: int
    checksum: str
    payloads: Dict[str, int]
    remote_prefix: Optional[str] = None
    uploaded: bool = False
    local_deleted: bool = False


class RestoreResult(BaseModel):
    """Outcome of restoring one datastore."""

    snapshot_id: str
    target: str
    payload_path: Optional[Path] = None
    dry_run: bool = False
    restored: bool = False
