"""Snapshot protocol: naming, packaging, checksum records and payload extraction."""

import hashlib
import json
import re
import shutil
import tarfile
import zlib
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .._utils import logger
from ..exceptions import (
    ExtractionError,
    PayloadNotFoundError,
    SnapshotNotFoundError,
    VerificationError,
)
from .models import ChecksumRecord

SNAPSHOT_ID_FORMAT = "%Y%m%dT%H%M%SZ"
SNAPSHOT_ID_PATTERN = re.compile(r"^\d{8}T\d{6}Z$")
ARCHIVE_SUFFIX = ".tar.gz"
CHECKSUM_SUFFIX = ".sha256"
DIAGNOSTIC_ENTRY_LIMIT = 50
CHUNK_SIZE = 1024 * 1024
ARCHIVE_READ_ERRORS = (tarfile.TarError, EOFError, OSError, zlib.error)


def generate_snapshot_id(now: Optional[datetime] = None) -> str:
    """Generate snapshot ID from the current UTC time.

    Returns:
        Snapshot ID in format: YYYYMMDDTHHMMSSZ
    """
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime(SNAPSHOT_ID_FORMAT)


def is_snapshot_id(value: str) -> bool:
    return bool(SNAPSHOT_ID_PATTERN.match(value))


def latest_snapshot_id(candidates: Iterable[str], location: str = "store") -> str:
    """Pick the newest snapshot ID.

    IDs sort chronologically as strings, so the newest is the maximum.
    Entries that are not snapshot IDs (stray prefixes) are ignored.

    Args:
        candidates: Snapshot IDs known to the store
        location: Store location, used in the error message

    Returns:
        Lexicographically greatest snapshot ID

    Raises:
        SnapshotNotFoundError: If there is no snapshot ID among candidates
    """
    ids = [candidate for candidate in candidates if is_snapshot_id(candidate)]
    if not ids:
        raise SnapshotNotFoundError(location)
    return max(ids)


def archive_name(snapshot_id: str) -> str:
    return f"{snapshot_id}{ARCHIVE_SUFFIX}"


def checksum_name(snapshot_id: str) -> str:
    return f"{snapshot_id}{ARCHIVE_SUFFIX}{CHECKSUM_SUFFIX}"


async def create_archive(source_dir: Path, output_path: Path) -> int:
    """Create tar.gz archive whose root entry is the source directory itself.

    Args:
        source_dir: Snapshot working directory (named after the snapshot ID)
        output_path: Output .tar.gz file path

    Returns:
        Size of created archive in bytes
    """
    logger.info(f"Packaging {source_dir} -> {output_path}")

    with tarfile.open(output_path, "w:gz") as tar:
        tar.add(source_dir, arcname=source_dir.name)

    archive_size = output_path.stat().st_size
    logger.info(f"Archive created: {archive_size:,} bytes")

    return archive_size


def compute_checksum(file_path: Path) -> str:
    """Compute SHA-256 checksum of file.

    Args:
        file_path: Path to file

    Returns:
        SHA-256 checksum as lowercase hex string
    """
    sha256 = hashlib.sha256()

    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            sha256.update(chunk)

    return sha256.hexdigest()


def write_checksum_record(archive_path: Path) -> Path:
    """Write `<archive>.sha256` next to the archive in sha256sum format."""
    record = ChecksumRecord(digest=compute_checksum(archive_path), filename=archive_path.name)
    record_path = archive_path.with_name(archive_path.name + CHECKSUM_SUFFIX)
    record_path.write_text(record.render())
    logger.info(f"SHA256: {record_path}")
    return record_path


def read_checksum_record(record_path: Path) -> ChecksumRecord:
    """Parse a checksum record file.

    Raises:
        VerificationError: If the record is empty or malformed
    """
    try:
        return ChecksumRecord.parse(record_path.read_text())
    except ValueError as e:
        raise VerificationError(f"Invalid checksum record {record_path}: {e}") from e


def verify_checksum(archive_path: Path, record_path: Path) -> ChecksumRecord:
    """Verify an archive against its detached checksum record.

    Args:
        archive_path: Path to the archive
        record_path: Path to the `.sha256` record

    Returns:
        The verified record

    Raises:
        VerificationError: If the digests differ
    """
    record = read_checksum_record(record_path)
    actual = compute_checksum(archive_path)

    if actual != record.digest:
        raise VerificationError(
            f"Checksum mismatch for {archive_path.name}: "
            f"expected {record.digest}, got {actual}"
        )

    logger.info(f"{archive_path.name}: OK ({actual})")
    return record


@contextmanager
def _open_archive(archive_path: Path) -> Iterator[tarfile.TarFile]:
    """Open a tar.gz for reading.

    A verified archive can still be an unreadable tar stream; read failures
    anywhere inside the block surface as ExtractionError.
    """
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            yield tar
    except ARCHIVE_READ_ERRORS as e:
        raise ExtractionError(f"Cannot read archive {archive_path.name}: {e}") from e


def list_archive_entries(archive_path: Path, limit: Optional[int] = None) -> List[str]:
    """List member names of a tar.gz archive, optionally only the first `limit`."""
    entries = []
    with _open_archive(archive_path) as tar:
        for member in tar:
            if limit is not None and len(entries) >= limit:
                break
            entries.append(member.name)
    return entries


def _matches(member_name: str, payload_name: str) -> bool:
    return member_name == payload_name or member_name.endswith(f"/{payload_name}")


def locate_payload(archive_path: Path, payload_name: str) -> str:
    """Find a payload file anywhere inside an archive.

    The first regular file whose basename is `payload_name` wins, whatever its
    depth or parent directory. Duplicate basenames are not detected.

    Args:
        archive_path: Path to the archive
        payload_name: Payload basename, e.g. mysql.sql.gz

    Returns:
        Internal path of the payload

    Raises:
        PayloadNotFoundError: If no entry matches; carries the first
            DIAGNOSTIC_ENTRY_LIMIT archive entries
        ExtractionError: If the archive is not a readable tar.gz
    """
    with _open_archive(archive_path) as tar:
        for member in tar:
            if member.isfile() and _matches(member.name, payload_name):
                logger.info(f"Found: {member.name}")
                return member.name

    raise PayloadNotFoundError(
        payload_name,
        archive_path.name,
        list_archive_entries(archive_path, limit=DIAGNOSTIC_ENTRY_LIMIT),
    )


def _prune_empty_dirs(start: Path, stop: Path) -> None:
    """Remove empty directories from start up to, not including, stop."""
    current = start
    while current != stop and stop in current.parents:
        try:
            current.rmdir()
        except OSError:
            break
        current = current.parent


def extract_payload(
    archive_path: Path,
    internal_path: str,
    dest_dir: Path,
    canonical_name: str,
) -> Path:
    """Extract one payload and normalize it to `dest_dir/canonical_name`.

    Args:
        archive_path: Path to the archive
        internal_path: Member name returned by locate_payload
        dest_dir: Snapshot cache directory
        canonical_name: Fixed local file name for the payload

    Returns:
        Path to the normalized payload

    Raises:
        ExtractionError: If the archive is unreadable or the normalized file
            is missing afterwards
    """
    target = dest_dir / canonical_name

    if target.exists():
        logger.info(f"Found existing {target} (skipping extraction)")
        return target

    logger.info(f"Extracting {internal_path} ...")
    dest_dir.mkdir(parents=True, exist_ok=True)

    with _open_archive(archive_path) as tar:
        try:
            member = tar.getmember(internal_path)
            tar.extractall(dest_dir, members=[member], filter="data")
        except (KeyError, tarfile.FilterError) as e:
            raise ExtractionError(f"Cannot extract {internal_path} from {archive_path.name}: {e}") from e

    extracted = dest_dir / internal_path
    if extracted != target and extracted.is_file():
        shutil.copyfile(extracted, target)
        extracted.unlink()
        _prune_empty_dirs(extracted.parent, dest_dir)

    if not target.is_file():
        raise ExtractionError(f"Extraction failed: {target} missing")

    return target


async def save_manifest(manifest: Dict[str, Any], output_path: Path) -> None:
    """Save manifest JSON to file.

    Args:
        manifest: Manifest dictionary
        output_path: Output file path
    """
    with open(output_path, "w") as f:
        json.dump(manifest, f, indent=2, default=str)

    logger.debug(f"Manifest saved: {output_path}")
