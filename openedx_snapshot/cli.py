"""Command line entry point: `openedx-snapshot backup|restore`."""

import argparse
import asyncio
import dataclasses
import sys
from typing import List, Optional

from ._utils import logger, setup_logging
from .backup import BackupManager, RestoreManager
from .backup.manager import RESTORE_TARGETS
from .config import SnapshotConfig
from .exceptions import SnapshotError

EPILOG = """\
Settings come from defaults, then the config file (--config, $CONF_FILE or
~/.openedx-snapshot.env), then environment variables (S3_BUCKET, S3_PREFIX,
BACKUP_ROOT, WORKDIR, MYSQL_*, DB_HOST, DB_PORT, DB_USER, DB_NAME, IMPORT_MODE,
ASK_PASSWORD, MONGO_*, MAP_FROM, MAP_TO, DROP_BEFORE_RESTORE, TUTOR_BIN, ...),
then command line flags.
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="openedx-snapshot",
        description="Back up and restore Open edX MySQL and MongoDB snapshots via S3",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Config file with KEY=VALUE settings", default=None)
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    backup = subparsers.add_parser("backup", help="Dump, package, checksum and upload a snapshot")
    backup.add_argument("--dry-run", action="store_true", help="Show what would happen and exit")
    backup.add_argument(
        "--no-stop-services",
        action="store_true",
        help="Keep LMS/CMS and workers running during the dump",
    )
    backup.add_argument(
        "--keep-local",
        action="store_true",
        help="Keep local artifacts even if S3_DELETE_LOCAL_AFTER_UPLOAD=true",
    )

    restore = subparsers.add_parser("restore", help="Download, verify and restore a snapshot")
    restore.add_argument(
        "target",
        nargs="?",
        choices=RESTORE_TARGETS,
        default="all",
        help="Datastore to restore (default: all, MySQL first)",
    )
    restore.add_argument(
        "--ts",
        metavar="TIMESTAMP",
        help="Restore this backup (e.g., 20251108T184125Z). If omitted, the latest is used.",
    )
    restore.add_argument("--list", action="store_true", help="List available backup timestamps and exit")
    restore.add_argument("--dry-run", action="store_true", help="Don't restore; just show what would happen")
    restore.add_argument("--force", action="store_true", help="Re-download and re-extract cached files")

    return parser


def apply_overrides(config: SnapshotConfig, args: argparse.Namespace) -> SnapshotConfig:
    """Apply command line flags on top of file and environment settings."""
    if args.command == "backup":
        backup = config.backup
        if args.no_stop_services:
            backup = dataclasses.replace(backup, stop_services=False)
        if args.keep_local:
            backup = dataclasses.replace(backup, delete_local_after_upload=False)
        config = dataclasses.replace(config, backup=backup)
    if args.verbose:
        config = dataclasses.replace(config, log_level="DEBUG")
    return config


async def run_backup(config: SnapshotConfig, args: argparse.Namespace) -> int:
    manager = BackupManager(config)

    if args.dry_run:
        for step in manager.plan():
            logger.info(f"[DRY-RUN] {step}")
        return 0

    metadata = await manager.create_backup()
    if manager.store is not None and not metadata.uploaded:
        print(
            f"[ERROR] Upload failed; local snapshot kept at {metadata.archive_path}",
            file=sys.stderr,
        )
        return 1
    return 0


async def run_restore(config: SnapshotConfig, args: argparse.Namespace) -> int:
    manager = RestoreManager(config)

    if args.list:
        snapshot_ids = await manager.list_snapshots()
        print(f"Available timestamps under {manager.store.location}/:")
        for snapshot_id in snapshot_ids:
            print(snapshot_id)
        return 0

    await manager.restore(
        target=args.target,
        snapshot_id=args.ts,
        dry_run=args.dry_run,
        force=args.force,
    )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Run the CLI and return the process exit code."""
    args = build_parser().parse_args(argv)

    try:
        config = apply_overrides(SnapshotConfig.from_env(args.config), args)
        setup_logging(config.log_level)
        if args.command == "backup":
            return asyncio.run(run_backup(config, args))
        return asyncio.run(run_restore(config, args))
    except (SnapshotError, ValueError) as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1
