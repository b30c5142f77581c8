"""Backup and restore orchestration for the platform datastores."""

import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from .._utils import logger
from ..config import SnapshotConfig
from ..exceptions import CommandError, ConfigurationError, TransportError
from .exporters import MongoExporter, MySQLExporter
from .models import BackupManifest, ChecksumRecord, RestoreResult, SnapshotMetadata
from .process import format_command
from .services import TutorServices
from .store import SnapshotStore
from .utils import (
    archive_name,
    checksum_name,
    create_archive,
    extract_payload,
    generate_snapshot_id,
    is_snapshot_id,
    latest_snapshot_id,
    locate_payload,
    read_checksum_record,
    save_manifest,
    verify_checksum,
    write_checksum_record,
)

Exporter = Union[MySQLExporter, MongoExporter]
RESTORE_TARGETS = ("mysql", "mongodb", "all")


class BackupManager:
    """Produce a snapshot: dump, package, checksum, upload."""

    def __init__(
        self,
        config: SnapshotConfig,
        store: Optional[SnapshotStore] = None,
        services: Optional[TutorServices] = None,
        exporters: Optional[Sequence[Exporter]] = None,
    ):
        """Initialize backup manager.

        Args:
            config: Complete configuration
            store: Snapshot store; built from config.store when S3 is configured
            services: Tutor service control
            exporters: Datastore exporters, dumped in order
        """
        self.config = config
        self.backup_root = config.backup.backup_root
        self.services = services or TutorServices(config.tutor)
        if store is None and config.store.enabled:
            store = SnapshotStore(config.store)
        self.store = store
        self.exporters = list(exporters) if exporters is not None else [
            MySQLExporter(config.mysql, config.mysql_target),
            MongoExporter(config.mongo, config.mongo_restore, self.services, config.backup.log_dir),
        ]

    def check_dependencies(self) -> None:
        """Raise MissingDependencyError before anything is written."""
        for exporter in self.exporters:
            exporter.check_export_dependencies()

    async def create_backup(self, snapshot_id: Optional[str] = None) -> SnapshotMetadata:
        """Create a snapshot of all datastores.

        Upload failures do not raise: local artifacts are kept and the
        returned metadata has uploaded=False.

        Args:
            snapshot_id: Optional explicit ID. If None, generated from the UTC clock.

        Returns:
            SnapshotMetadata describing local and remote artifacts
        """
        self.check_dependencies()

        snapshot_id = snapshot_id or generate_snapshot_id()
        workdir = self.backup_root / snapshot_id
        workdir.mkdir(parents=True, exist_ok=True)
        self.config.backup.log_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Backup start -> {workdir}")

        payloads = await self._dump_all(workdir)
        created_at = datetime.now(timezone.utc)

        manifest = BackupManifest(
            snapshot_id=snapshot_id,
            created_at=created_at,
            openedx_snapshot_version=self._get_version(),
            payloads=payloads,
        )
        await save_manifest(manifest.model_dump(), workdir / "manifest.json")

        archive_path = self.backup_root / archive_name(snapshot_id)
        size = await create_archive(workdir, archive_path)
        checksum_path = write_checksum_record(archive_path)

        metadata = SnapshotMetadata(
            snapshot_id=snapshot_id,
            created_at=created_at,
            archive_path=archive_path,
            checksum_path=checksum_path,
            size_bytes=size,
            checksum=read_checksum_record(checksum_path).digest,
            payloads=payloads,
        )

        if self.store is None:
            logger.info("S3_BUCKET not set - skipping S3 upload.")
        else:
            metadata.remote_prefix = self.store.url_for(snapshot_id)
            metadata.uploaded = await self._upload(snapshot_id, archive_path, checksum_path)
            if metadata.uploaded and self.config.backup.delete_local_after_upload:
                logger.info("Deleting local artifacts after upload (per config) ...")
                shutil.rmtree(workdir, ignore_errors=True)
                archive_path.unlink(missing_ok=True)
                checksum_path.unlink(missing_ok=True)
                metadata.local_deleted = True

        logger.info(f"Backup complete: {snapshot_id} ({size:,} bytes)")
        return metadata

    async def _dump_all(self, workdir: Path) -> Dict[str, int]:
        """Run every exporter, with platform services stopped if configured."""
        stopped = False
        if self.config.backup.stop_services:
            await self.services.stop()
            stopped = True

        try:
            files = [await exporter.export(workdir) for exporter in self.exporters]
        finally:
            if stopped:
                try:
                    await self.services.start()
                except Exception as e:
                    logger.error(f"Failed to restart services: {e}")

        return {path.name: path.stat().st_size for path in files}

    async def _upload(self, snapshot_id: str, archive_path: Path, checksum_path: Path) -> bool:
        """Upload archive, then checksum. Both are attempted; failures are warnings."""
        logger.info(f"Uploading to {self.store.url_for(snapshot_id)} ...")
        failures = []
        for path in (archive_path, checksum_path):
            try:
                await self.store.upload(path, snapshot_id)
            except TransportError as e:
                failures.append(f"{path.name}: {e}")

        if failures:
            logger.warning(
                "S3 upload failed; local artifacts kept. Check IAM & bucket/prefix.\n"
                + "\n".join(failures)
            )
            return False

        logger.info("S3 upload complete.")
        return True

    def plan(self, snapshot_id: Optional[str] = None) -> List[str]:
        """Describe what create_backup would do, without side effects."""
        self.check_dependencies()
        snapshot_id = snapshot_id or generate_snapshot_id()
        workdir = self.backup_root / snapshot_id
        services = " ".join(self.config.tutor.services)

        steps = [f"create {workdir}"]
        if self.config.backup.stop_services:
            steps.append(format_command(self.services.tutor("stop", *self.config.tutor.services)))
        for exporter in self.exporters:
            redact = [exporter.source.password] if exporter.source.password else []
            steps.append(f"{format_command(exporter.dump_command(), redact)}  -> {workdir / exporter.payload_name}")
        if self.config.backup.stop_services:
            steps.append(f"start {services}")
        archive_path = self.backup_root / archive_name(snapshot_id)
        steps.append(f"package {workdir} -> {archive_path}")
        steps.append(f"sha256 {archive_path} -> {archive_path}.sha256")
        if self.store is None:
            steps.append("skip upload (S3_BUCKET not set)")
        else:
            steps.append(f"upload {archive_path.name} -> {self.store.url_for(snapshot_id, archive_path.name)}")
            steps.append(f"upload {checksum_name(snapshot_id)} -> {self.store.url_for(snapshot_id, checksum_name(snapshot_id))}")
        return steps

    def _get_version(self) -> str:
        """Get openedx-snapshot version."""
        from .. import __version__
        return __version__


class RestoreManager:
    """Consume a snapshot: select, download, verify, extract, restore."""

    def __init__(
        self,
        config: SnapshotConfig,
        store: Optional[SnapshotStore] = None,
        services: Optional[TutorServices] = None,
        exporters: Optional[Dict[str, Exporter]] = None,
    ):
        """Initialize restore manager.

        Args:
            config: Complete configuration
            store: Snapshot store; built from config.store when not given
            services: Tutor service control
            exporters: Exporters keyed by target name ("mysql", "mongodb")
        """
        self.config = config
        self.workdir = config.restore.workdir
        self.store = store or SnapshotStore(config.store)
        services = services or TutorServices(config.tutor)
        self.exporters = exporters or {
            "mysql": MySQLExporter(config.mysql, config.mysql_target),
            "mongodb": MongoExporter(config.mongo, config.mongo_restore, services),
        }

    async def list_snapshots(self) -> List[str]:
        return await self.store.list_snapshots()

    async def resolve_snapshot_id(self, snapshot_id: Optional[str] = None) -> str:
        """Validate an explicit snapshot ID, or pick the latest one in the store.

        Raises:
            ConfigurationError: If snapshot_id is not a YYYYMMDDTHHMMSSZ timestamp
            SnapshotNotFoundError: If the store holds no snapshots
        """
        if snapshot_id:
            if not is_snapshot_id(snapshot_id):
                raise ConfigurationError(
                    f"Invalid timestamp {snapshot_id!r}; expected e.g. 20251108T184125Z"
                )
            return snapshot_id
        return latest_snapshot_id(await self.list_snapshots(), self.store.location)

    def snapshot_dir(self, snapshot_id: str) -> Path:
        return self.workdir / snapshot_id

    def clear_cache(self, snapshot_id: str) -> None:
        """Remove cached archive, checksum and normalized payloads."""
        dest = self.snapshot_dir(snapshot_id)
        names = [archive_name(snapshot_id), checksum_name(snapshot_id)]
        names += [exporter.payload_name for exporter in self.exporters.values()]
        for name in names:
            path = dest / name
            if path.exists():
                logger.info(f"Removing cached {path}")
                path.unlink()

    async def fetch(self, snapshot_id: str, force: bool = False) -> Path:
        """Download archive and checksum record into the local cache.

        Args:
            snapshot_id: Snapshot to fetch
            force: Clear cached files first

        Returns:
            Local snapshot directory
        """
        dest = self.snapshot_dir(snapshot_id)
        dest.mkdir(parents=True, exist_ok=True)
        if force:
            self.clear_cache(snapshot_id)

        for name in (archive_name(snapshot_id), checksum_name(snapshot_id)):
            await self.store.download(snapshot_id, name, dest / name)

        return dest

    def verify(self, snapshot_id: str) -> ChecksumRecord:
        logger.info("Verifying checksum ...")
        dest = self.snapshot_dir(snapshot_id)
        return verify_checksum(dest / archive_name(snapshot_id), dest / checksum_name(snapshot_id))

    def prepare_payload(self, snapshot_id: str, payload_name: str) -> Path:
        """Locate a payload in the verified archive and normalize it.

        Returns:
            Path to `<workdir>/<TS>/<payload_name>`
        """
        dest = self.snapshot_dir(snapshot_id)
        target = dest / payload_name
        if target.is_file():
            logger.info(f"Found existing {target} (skipping extraction)")
            return target

        archive = dest / archive_name(snapshot_id)
        logger.info("Inspecting tarball layout ...")
        internal_path = locate_payload(archive, payload_name)
        return extract_payload(archive, internal_path, dest, payload_name)

    def _select(self, target: str) -> List[Exporter]:
        if target not in RESTORE_TARGETS:
            raise ConfigurationError(f"Unknown restore target {target!r}; expected one of {RESTORE_TARGETS}")
        if target == "all":
            return [self.exporters["mysql"], self.exporters["mongodb"]]
        return [self.exporters[target]]

    async def restore(
        self,
        target: str = "all",
        snapshot_id: Optional[str] = None,
        dry_run: bool = False,
        force: bool = False,
    ) -> List[RestoreResult]:
        """Restore one or both datastores from a snapshot.

        Verification always precedes extraction; a checksum mismatch aborts
        before any payload is touched.

        Args:
            target: "mysql", "mongodb" or "all" (MySQL first)
            snapshot_id: Snapshot to restore; latest when None
            dry_run: Resolve the snapshot and report the plan only
            force: Re-download and re-extract even if cached

        Returns:
            One RestoreResult per restored datastore
        """
        exporters = self._select(target)
        for exporter in exporters:
            exporter.check_restore_dependencies()

        snapshot_id = await self.resolve_snapshot_id(snapshot_id)
        dest = self.snapshot_dir(snapshot_id)
        logger.info(f"Using timestamp: {snapshot_id}")
        logger.info(f"Workdir: {dest}")

        if dry_run:
            return self._dry_run(snapshot_id, exporters)

        await self.fetch(snapshot_id, force=force)
        self.verify(snapshot_id)

        results = []
        for exporter in exporters:
            logger.info(f"Restoring {exporter.name} from {snapshot_id} ...")
            payload = self.prepare_payload(snapshot_id, exporter.payload_name)
            await exporter.restore(payload)
            try:
                await exporter.post_check()
            except (CommandError, OSError) as e:
                logger.warning(f"Post-restore check for {exporter.name} failed: {e}")
            results.append(RestoreResult(
                snapshot_id=snapshot_id,
                target=exporter.name,
                payload_path=payload,
                restored=True,
            ))

        logger.info(f"Restore complete: {snapshot_id}")
        return results

    def _dry_run(self, snapshot_id: str, exporters: List[Exporter]) -> List[RestoreResult]:
        dest = self.snapshot_dir(snapshot_id)
        for name in (archive_name(snapshot_id), checksum_name(snapshot_id)):
            local = dest / name
            state = "cached" if local.exists() else f"download {self.store.url_for(snapshot_id, name)}"
            logger.info(f"[DRY-RUN] {local}: {state}")
        logger.info(f"[DRY-RUN] verify {archive_name(snapshot_id)} against {checksum_name(snapshot_id)}")

        results = []
        for exporter in exporters:
            payload = dest / exporter.payload_name
            logger.info(f"[DRY-RUN] extract {exporter.payload_name} -> {payload}")
            logger.info(f"[DRY-RUN] Would execute: {exporter.describe_restore(payload)}")
            results.append(RestoreResult(
                snapshot_id=snapshot_id,
                target=exporter.name,
                payload_path=payload,
                dry_run=True,
            ))
        return results
