"""MongoDB dump/restore through the Tutor mongodb container."""

import gzip
import shlex
from pathlib import Path
from typing import List, Optional

from ..._utils import logger, require_commands
from ...config import MongoConfig, MongoRestoreConfig
from ...exceptions import CommandError, ExportError
from ..process import format_command, run_command, stream_file_to_command
from ..services import TutorServices

CONTAINER_DUMP_DIR = "/var/tmp/dumps"

COUNT_SNIPPET = """
function countColl(dbname, coll) {
  try {
    const d = db.getSiblingDB(dbname);
    const n = d.getCollection(coll).countDocuments({});
    print(dbname + "." + coll + " = " + n);
  } catch (e) {}
}
for (const dbn of ["openedx", "openedx_restore"]) {
  for (const c of ["modulestore.definitions", "modulestore.structures", "fs.files"]) {
    countColl(dbn, c);
  }
}
"""


class MongoExporter:
    """Export and restore MongoDB using mongodump/mongorestore archives.

    mongodump runs inside the mongodb container and writes to a scratch
    directory there; the archive is then copied out with `docker cp`, so the
    dump never travels over a TTY. mongorestore reads the archive from stdin.
    """

    name = "mongodb"
    payload_name = "mongodb.archive.gz"

    def __init__(
        self,
        source: MongoConfig,
        restore_options: MongoRestoreConfig,
        services: TutorServices,
        log_dir: Optional[Path] = None,
    ):
        """Initialize exporter.

        Args:
            source: MongoDB server dumped by backups
            restore_options: mongorestore options
            services: Tutor control used to exec into the mongodb container
            log_dir: Directory receiving mongodump stderr logs
        """
        self.source = source
        self.restore_options = restore_options
        self.services = services
        self.log_dir = log_dir

    # Backup

    def check_export_dependencies(self) -> None:
        require_commands("docker", self.services.config.tutor_bin)

    def _auth_args(self) -> List[str]:
        args = []
        if self.source.user and self.source.password:
            args += [
                f"--username={self.source.user}",
                f"--password={self.source.password}",
                f"--authenticationDatabase={self.source.auth_db}",
            ]
        if self.source.use_oplog:
            args.append("--oplog")
        return args

    def dump_script(self) -> str:
        """Shell script run inside the container to produce the archive."""
        out = f"{CONTAINER_DUMP_DIR}/{self.payload_name}"
        mongodump = [
            "mongodump",
            "--host", self.source.host,
            "--port", str(self.source.port),
            *self._auth_args(),
            f"--archive={out}",
            "--gzip",
        ]
        return "\n".join([
            "set -euo pipefail",
            f"install -d -m 0777 {CONTAINER_DUMP_DIR}",
            f"rm -f {out}",
            shlex.join(mongodump),
            f"ls -lh {out}",
        ])

    def dump_command(self) -> List[str]:
        return self.services.exec_in(
            self.services.config.mongodb_service, "bash", "-lc", self.dump_script()
        )

    def _redact(self) -> List[str]:
        return [self.source.password] if self.source.password else []

    async def export(self, output_dir: Path) -> Path:
        """Dump MongoDB inside its container and copy the archive to the host.

        Args:
            output_dir: Snapshot working directory

        Returns:
            Path to mongodb.archive.gz on the host

        Raises:
            ExportError: If the copied archive is not valid gzip
        """
        logger.info("Dumping MongoDB inside container -> copy to host ...")
        output_dir.mkdir(parents=True, exist_ok=True)
        archive = output_dir / self.payload_name

        try:
            result = await run_command(self.dump_command(), redact=self._redact())
        except CommandError as e:
            self._write_stderr_log(output_dir.name, (e.stderr or "").encode())
            raise
        self._write_stderr_log(output_dir.name, result.stderr)

        service = self.services.config.mongodb_service
        container_id = await self.services.container_id(service)
        await self.services.copy_from(
            container_id, f"{CONTAINER_DUMP_DIR}/{self.payload_name}", str(archive)
        )

        self._validate_gzip(archive)
        logger.info(f"Mongo dump: {archive}")
        return archive

    def _write_stderr_log(self, snapshot_id: str, stderr: bytes) -> None:
        if self.log_dir is None or not stderr:
            return
        self.log_dir.mkdir(parents=True, exist_ok=True)
        with open(self.log_dir / f"mongodump_{snapshot_id}.stderr.log", "ab") as f:
            f.write(stderr)

    @staticmethod
    def _validate_gzip(archive: Path) -> None:
        try:
            with gzip.open(archive, "rb") as f:
                while f.read(1024 * 1024):
                    pass
        except (OSError, EOFError) as e:
            raise ExportError(f"Mongo dump produced a non-gzip file at {archive}: {e}") from e

    # Restore

    def check_restore_dependencies(self) -> None:
        require_commands(self.services.config.tutor_bin)

    def restore_command(self) -> List[str]:
        opts = self.restore_options
        args = ["mongorestore", "--archive", "--gzip"]
        if opts.ns_include:
            args.append(f"--nsInclude={opts.ns_include}")
        if opts.map_from and opts.map_to:
            args += ["--nsFrom", opts.map_from, "--nsTo", opts.map_to]
        if opts.drop:
            args.append("--drop")
        return self.services.exec_in(self.services.config.mongodb_service, *args)

    def describe_restore(self, payload_path: Path) -> str:
        return f"{format_command(self.restore_command())} < {payload_path}"

    async def restore(self, payload_path: Path) -> None:
        """Stream the archive into mongorestore inside the container.

        Args:
            payload_path: Normalized mongodb.archive.gz
        """
        opts = self.restore_options
        logger.info(
            f"Ready to restore: archive={payload_path} nsInclude={opts.ns_include} "
            f"drop before restore={opts.drop}"
        )

        await self.services.ensure_running()

        logger.info("Restoring into Tutor Mongo ... (this can take a while)")
        await stream_file_to_command(payload_path, self.restore_command())
        logger.info("Mongo restore complete.")

    async def post_check(self) -> str:
        """Log sample counts of modulestore and GridFS collections."""
        command = self.services.exec_in(
            self.services.config.mongodb_service, "mongosh", "--quiet", "--eval", COUNT_SNIPPET
        )
        result = await run_command(command)
        logger.info(f"Sample counts (definitions/structures/fs.files):\n{result.text.strip()}")
        return result.text
