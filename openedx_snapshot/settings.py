"""Layered settings: defaults, then config file, then environment."""

import os
from pathlib import Path
from typing import Optional, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

DEFAULT_CONFIG_FILE = Path.home() / ".openedx-snapshot.env"


class Settings(BaseSettings):
    # Backup working area
    backup_root: str = str(Path.home() / "data_backup")
    stop_services: bool = True

    # Source MySQL (backup)
    mysql_host: str = "127.0.0.1"
    mysql_port: int = 3306
    mysql_user: str = "openedx"
    mysql_password: str = ""
    mysql_databases: str = Field(default="openedx", description="Space-separated database names")
    mysql_defaults_file: str = ""
    mysqldump_bin: str = ""

    # Source MongoDB (backup, runs inside the mongodb container)
    mongo_host: str = "mongodb"
    mongo_port: int = 27017
    mongo_user: str = ""
    mongo_password: str = ""
    mongo_auth_db: str = "admin"
    mongo_use_oplog: bool = False

    # Tutor / docker compose
    tutor_bin: str = "tutor"
    tutor_exec_no_tty_flag: str = "-T"
    compose_files: str = Field(
        default=(
            f"{Path.home()}/.local/share/tutor/env/local/docker-compose.yml "
            f"{Path.home()}/.local/share/tutor/env/local/docker-compose.prod.yml"
        ),
        description="Space-separated docker compose files",
    )
    compose_project: str = "tutor_local"
    platform_services: str = "lms cms lms-worker cms-worker"

    # Object storage
    s3_bucket: str = ""
    s3_prefix: str = ""
    aws_profile: str = ""
    aws_region: str = ""
    aws_endpoint_url: str = ""
    s3_storage_class: str = ""
    s3_sse: str = ""
    s3_sse_kms_key_id: str = ""
    s3_delete_local_after_upload: bool = False

    # Restore targets
    workdir: str = str(Path.home() / "openedx-restore")
    db_host: str = "127.0.0.1"
    db_port: int = 3306
    db_user: str = "root"
    db_name: str = ""
    import_mode: str = "auto"
    ask_password: bool = True
    parallel_gzip: bool = False
    mongo_ns_include: str = "openedx.*"
    map_from: str = ""
    map_to: str = ""
    drop_before_restore: bool = True

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
        env_file_encoding="utf-8",
    )

    @field_validator("import_mode", mode="before")
    @classmethod
    def normalize_import_mode(cls, v):
        """Accept IMPORT_MODE in any case."""
        if isinstance(v, str):
            return v.strip().lower()
        return v


def default_config_file() -> Optional[Path]:
    """Config file from $CONF_FILE, else the per-user default if it exists."""
    conf_file = os.getenv("CONF_FILE")
    if conf_file:
        return Path(conf_file).expanduser()
    if DEFAULT_CONFIG_FILE.exists():
        return DEFAULT_CONFIG_FILE
    return None


def load_settings(config_file: Optional[Union[str, Path]] = None) -> Settings:
    """Load settings with defaults <- config file <- environment precedence.

    Args:
        config_file: Dotenv-style KEY=VALUE file. Falls back to
            default_config_file() when not given.

    Returns:
        Settings instance

    Raises:
        ConfigurationError: If an explicitly given config file does not exist
    """
    if config_file:
        path = Path(config_file).expanduser()
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
    else:
        path = default_config_file()
    if path is not None and path.exists():
        return Settings(_env_file=path)
    return Settings(_env_file=None)
