"""Configuration management for openedx-snapshot."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from .settings import Settings, load_settings

IMPORT_MODES = ("auto", "one_db")
SSE_MODES = ("AES256", "aws:kms")


def _split(value: str) -> Tuple[str, ...]:
    return tuple(part for part in value.split() if part)


def _check_port(name: str, port: int) -> None:
    if not 0 < port < 65536:
        raise ValueError(f"{name} must be between 1 and 65535, got {port}")


@dataclass(frozen=True)
class StoreConfig:
    """Object storage location and upload options."""
    bucket_url: str = ""  # s3://bucket[/path]
    prefix: str = ""
    aws_profile: Optional[str] = None
    aws_region: Optional[str] = None
    endpoint_url: Optional[str] = None
    storage_class: Optional[str] = None
    sse: Optional[str] = None
    sse_kms_key_id: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> 'StoreConfig':
        return cls(
            bucket_url=settings.s3_bucket,
            prefix=settings.s3_prefix,
            aws_profile=settings.aws_profile or None,
            aws_region=settings.aws_region or None,
            endpoint_url=settings.aws_endpoint_url or None,
            storage_class=settings.s3_storage_class or None,
            sse=settings.s3_sse or None,
            sse_kms_key_id=settings.s3_sse_kms_key_id or None,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.bucket_url)

    def __post_init__(self):
        """Validate configuration."""
        if self.bucket_url and not self.bucket_url.startswith("s3://"):
            raise ValueError(f"S3_BUCKET must start with s3://, got {self.bucket_url}")
        if self.bucket_url and not self.bucket_url[len("s3://"):].strip("/"):
            raise ValueError("S3_BUCKET must name a bucket")
        if self.sse and self.sse not in SSE_MODES:
            raise ValueError(f"S3_SSE must be one of {SSE_MODES}, got {self.sse}")


@dataclass(frozen=True)
class TutorConfig:
    """Tutor CLI and the docker compose project behind it."""
    tutor_bin: str = "tutor"
    no_tty_flag: str = "-T"
    compose_files: Tuple[str, ...] = ()
    compose_project: str = "tutor_local"
    services: Tuple[str, ...] = ("lms", "cms", "lms-worker", "cms-worker")
    mongodb_service: str = "mongodb"

    @classmethod
    def from_settings(cls, settings: Settings) -> 'TutorConfig':
        return cls(
            tutor_bin=settings.tutor_bin,
            no_tty_flag=settings.tutor_exec_no_tty_flag.strip(),
            compose_files=_split(settings.compose_files),
            compose_project=settings.compose_project,
            services=_split(settings.platform_services),
        )

    def __post_init__(self):
        """Validate configuration."""
        if not self.tutor_bin:
            raise ValueError("tutor_bin must not be empty")
        if self.no_tty_flag not in ("", "-T", "--no-tty"):
            raise ValueError(f"no_tty_flag must be '-T', '--no-tty' or empty, got {self.no_tty_flag}")


@dataclass(frozen=True)
class MySQLConfig:
    """MySQL source dumped during backup."""
    host: str = "127.0.0.1"
    port: int = 3306
    user: str = "openedx"
    password: str = field(default="", repr=False)
    databases: Tuple[str, ...] = ("openedx",)
    defaults_file: Optional[str] = None
    dump_bin: Optional[str] = None  # None: mysqldump, then mariadb-dump

    @classmethod
    def from_settings(cls, settings: Settings) -> 'MySQLConfig':
        return cls(
            host=settings.mysql_host,
            port=settings.mysql_port,
            user=settings.mysql_user,
            password=settings.mysql_password,
            databases=_split(settings.mysql_databases),
            defaults_file=settings.mysql_defaults_file or None,
            dump_bin=settings.mysqldump_bin or None,
        )

    def __post_init__(self):
        """Validate configuration."""
        _check_port("MYSQL_PORT", self.port)
        if not self.databases:
            raise ValueError("MYSQL_DATABASES must name at least one database")


@dataclass(frozen=True)
class MySQLTargetConfig:
    """MySQL server a snapshot is restored into."""
    host: str = "127.0.0.1"
    port: int = 3306
    user: str = "root"
    db_name: Optional[str] = None
    import_mode: str = "auto"
    ask_password: bool = True
    parallel_gzip: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> 'MySQLTargetConfig':
        return cls(
            host=settings.db_host,
            port=settings.db_port,
            user=settings.db_user,
            db_name=settings.db_name or None,
            import_mode=settings.import_mode,
            ask_password=settings.ask_password,
            parallel_gzip=settings.parallel_gzip,
        )

    def __post_init__(self):
        """Validate configuration."""
        _check_port("DB_PORT", self.port)
        if self.import_mode not in IMPORT_MODES:
            raise ValueError(f"IMPORT_MODE must be one of {IMPORT_MODES}, got {self.import_mode}")


@dataclass(frozen=True)
class MongoConfig:
    """MongoDB source dumped during backup."""
    host: str = "mongodb"
    port: int = 27017
    user: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    auth_db: str = "admin"
    use_oplog: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> 'MongoConfig':
        return cls(
            host=settings.mongo_host,
            port=settings.mongo_port,
            user=settings.mongo_user or None,
            password=settings.mongo_password or None,
            auth_db=settings.mongo_auth_db or "admin",
            use_oplog=settings.mongo_use_oplog,
        )

    def __post_init__(self):
        """Validate configuration."""
        _check_port("MONGO_PORT", self.port)


@dataclass(frozen=True)
class MongoRestoreConfig:
    """mongorestore options."""
    ns_include: Optional[str] = "openedx.*"
    map_from: Optional[str] = None
    map_to: Optional[str] = None
    drop: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> 'MongoRestoreConfig':
        return cls(
            ns_include=settings.mongo_ns_include or None,
            map_from=settings.map_from or None,
            map_to=settings.map_to or None,
            drop=settings.drop_before_restore,
        )

    def __post_init__(self):
        """Validate configuration."""
        if bool(self.map_from) != bool(self.map_to):
            raise ValueError("MAP_FROM and MAP_TO must be set together")


@dataclass(frozen=True)
class BackupConfig:
    """Producer side: where snapshots are built and what happens after."""
    backup_root: Path = Path("./data_backup")
    stop_services: bool = True
    delete_local_after_upload: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> 'BackupConfig':
        return cls(
            backup_root=Path(settings.backup_root).expanduser(),
            stop_services=settings.stop_services,
            delete_local_after_upload=settings.s3_delete_local_after_upload,
        )

    @property
    def log_dir(self) -> Path:
        return self.backup_root / "logs"


@dataclass(frozen=True)
class RestoreConfig:
    """Consumer side: local cache of downloaded snapshots."""
    workdir: Path = Path("./openedx-restore")

    @classmethod
    def from_settings(cls, settings: Settings) -> 'RestoreConfig':
        return cls(workdir=Path(settings.workdir).expanduser())


@dataclass(frozen=True)
class SnapshotConfig:
    """Complete configuration passed explicitly to every component."""
    store: StoreConfig = field(default_factory=StoreConfig)
    tutor: TutorConfig = field(default_factory=TutorConfig)
    mysql: MySQLConfig = field(default_factory=MySQLConfig)
    mysql_target: MySQLTargetConfig = field(default_factory=MySQLTargetConfig)
    mongo: MongoConfig = field(default_factory=MongoConfig)
    mongo_restore: MongoRestoreConfig = field(default_factory=MongoRestoreConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    restore: RestoreConfig = field(default_factory=RestoreConfig)
    log_level: str = "INFO"

    @classmethod
    def from_settings(cls, settings: Settings) -> 'SnapshotConfig':
        """Build the config tree from loaded settings."""
        return cls(
            store=StoreConfig.from_settings(settings),
            tutor=TutorConfig.from_settings(settings),
            mysql=MySQLConfig.from_settings(settings),
            mysql_target=MySQLTargetConfig.from_settings(settings),
            mongo=MongoConfig.from_settings(settings),
            mongo_restore=MongoRestoreConfig.from_settings(settings),
            backup=BackupConfig.from_settings(settings),
            restore=RestoreConfig.from_settings(settings),
            log_level=settings.log_level.upper(),
        )

    @classmethod
    def from_env(cls, config_file: Optional[str] = None) -> 'SnapshotConfig':
        """Create config from the config file and environment variables."""
        return cls.from_settings(load_settings(config_file))
