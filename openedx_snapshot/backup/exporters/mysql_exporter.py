"""MySQL dump/restore using the mysqldump and mysql clients."""

import getpass
import shutil
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..._utils import logger, require_commands, resolve_command
from ...config import MySQLConfig, MySQLTargetConfig
from ...exceptions import ConfigurationError
from ..process import format_command, run_command, stream_command_to_file, stream_file_to_command

DUMP_CANDIDATES = ("mysqldump", "mariadb-dump")
DUMP_OPTIONS = ["--single-transaction", "--routines", "--triggers", "--events"]


class MySQLExporter:
    """Export and restore the platform's MySQL databases.

    Export streams mysqldump output through gzip into `mysql.sql.gz`.
    Restore streams the decompressed dump into the mysql client, either as-is
    (IMPORT_MODE=auto, the dump's own CREATE DATABASE/USE apply) or into one
    named database (IMPORT_MODE=one_db).
    """

    name = "mysql"
    payload_name = "mysql.sql.gz"

    def __init__(
        self,
        source: MySQLConfig,
        target: MySQLTargetConfig,
        prompt: Callable[[str], str] = getpass.getpass,
    ):
        """Initialize exporter.

        Args:
            source: MySQL server dumped by backups
            target: MySQL server restores are imported into
            prompt: Password prompt used when target.ask_password is set
        """
        self.source = source
        self.target = target
        self.prompt = prompt
        self._dump_bin: Optional[str] = None
        self._password: Optional[str] = None

    # Backup

    def check_export_dependencies(self) -> None:
        self._dump_bin = resolve_command(DUMP_CANDIDATES, self.source.dump_bin)

    def _uses_defaults_file(self) -> bool:
        return bool(self.source.defaults_file) and Path(self.source.defaults_file).is_file()

    def dump_command(self) -> List[str]:
        dump_bin = self._dump_bin or self.source.dump_bin or DUMP_CANDIDATES[0]
        if self._uses_defaults_file():
            cmd = [dump_bin, f"--defaults-extra-file={self.source.defaults_file}"]
        else:
            cmd = [dump_bin, "-h", self.source.host, "-P", str(self.source.port), "-u", self.source.user]
        return cmd + DUMP_OPTIONS + ["--databases", *self.source.databases]

    def _dump_env(self) -> Optional[Dict[str, str]]:
        if self.source.password and not self._uses_defaults_file():
            return {"MYSQL_PWD": self.source.password}
        return None

    async def export(self, output_dir: Path) -> Path:
        """Dump all configured databases into output_dir/mysql.sql.gz.

        Args:
            output_dir: Snapshot working directory

        Returns:
            Path to the compressed dump
        """
        logger.info("Dumping MySQL ...")
        output_dir.mkdir(parents=True, exist_ok=True)
        dump_file = output_dir / self.payload_name

        size = await stream_command_to_file(
            self.dump_command(), dump_file, compress=True, env=self._dump_env()
        )

        logger.info(f"MySQL dump: {dump_file} ({size:,} bytes uncompressed)")
        return dump_file

    # Restore

    def check_restore_dependencies(self) -> None:
        require_commands("mysql")

    def _client(self, *args: str) -> List[str]:
        t = self.target
        return ["mysql", "-h", t.host, "-P", str(t.port), "-u", t.user, *args]

    def restore_command(self) -> List[str]:
        if self.target.import_mode == "one_db":
            return self._client(self._require_db_name())
        return self._client()

    def _require_db_name(self) -> str:
        if not self.target.db_name:
            raise ConfigurationError("IMPORT_MODE=one_db requires DB_NAME to be set")
        return self.target.db_name

    def _decompressor(self) -> Optional[List[str]]:
        if self.target.parallel_gzip and shutil.which("pigz"):
            return ["pigz", "-dc"]
        return None

    def describe_restore(self, payload_path: Path) -> str:
        """Shell-equivalent pipeline, for dry-run output."""
        decompressor = " ".join(self._decompressor() or ["gunzip", "-c"])
        return f"{decompressor} {payload_path} | {format_command(self.restore_command())}"

    def _client_env(self) -> Optional[Dict[str, str]]:
        if not self.target.ask_password:
            return None
        if self._password is None:
            self._password = self.prompt(
                f"Enter MySQL password for user {self.target.user}@{self.target.host}: "
            )
        return {"MYSQL_PWD": self._password}

    async def restore(self, payload_path: Path) -> None:
        """Import a compressed dump into the target server.

        Args:
            payload_path: Normalized mysql.sql.gz
        """
        t = self.target
        env = self._client_env()
        logger.info(f"Ready to import into MySQL at {t.host}:{t.port} as {t.user}")

        if t.import_mode == "one_db":
            db_name = self._require_db_name()
            await run_command(
                self._client(
                    "-e",
                    f"CREATE DATABASE IF NOT EXISTS `{db_name}` "
                    "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;",
                ),
                env=env,
            )

        logger.info("Starting import ... (this can take a while)")
        decompressor = self._decompressor()
        await stream_file_to_command(
            payload_path,
            self.restore_command(),
            decompress=decompressor is None,
            decompressor=decompressor,
            env=env,
        )
        logger.info("MySQL restore complete.")

    async def post_check(self) -> str:
        """List databases on the target after a restore."""
        result = await run_command(self._client("-e", "SHOW DATABASES;"), env=self._client_env())
        logger.info(f"Databases after restore:\n{result.text.strip()}")
        return result.text
