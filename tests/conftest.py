"""Global pytest configuration and fixtures."""

import gzip
import io
import sys
import tarfile
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from openedx_snapshot.config import (  # noqa: E402
    BackupConfig,
    RestoreConfig,
    SnapshotConfig,
    StoreConfig,
)
from openedx_snapshot.backup.store import SnapshotStore  # noqa: E402

TS = "20251108T184125Z"


def build_archive(archive_path: Path, members: Dict[str, bytes]) -> Path:
    """Write a tar.gz with the given member paths and contents."""
    with tarfile.open(archive_path, "w:gz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return archive_path


def client_error(operation: str, code: str = "AccessDenied") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} for {operation}"}}, operation)


class FakeS3Backend:
    """In-memory bucket contents shared by fake clients."""

    def __init__(self):
        self.objects: Dict[tuple, bytes] = {}
        self.uploads: List[dict] = []
        self.upload_attempts: List[str] = []
        self.downloads: List[str] = []
        self.fail_uploads = False
        self.fail_listing = False

    def put(self, bucket: str, key: str, data: bytes) -> None:
        self.objects[(bucket, key)] = data


class FakePaginator:
    def __init__(self, backend: FakeS3Backend):
        self.backend = backend

    async def paginate(self, Bucket: str, Prefix: str = "", Delimiter: Optional[str] = None):
        if self.backend.fail_listing:
            raise client_error("ListObjectsV2")
        prefixes = set()
        for bucket, key in self.backend.objects:
            if bucket != Bucket or not key.startswith(Prefix):
                continue
            rest = key[len(Prefix):]
            if Delimiter and Delimiter in rest:
                prefixes.add(Prefix + rest.split(Delimiter, 1)[0] + Delimiter)
        # Two pages, to exercise pagination
        ordered = sorted(prefixes)
        half = len(ordered) // 2
        yield {"CommonPrefixes": [{"Prefix": p} for p in ordered[:half]]}
        yield {"CommonPrefixes": [{"Prefix": p} for p in ordered[half:]]}


class FakeS3Client:
    def __init__(self, backend: FakeS3Backend):
        self.backend = backend

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def get_paginator(self, name: str) -> FakePaginator:
        assert name == "list_objects_v2"
        return FakePaginator(self.backend)

    async def upload_file(self, Filename, Bucket, Key, ExtraArgs=None, **kwargs):
        self.backend.upload_attempts.append(Key)
        if self.backend.fail_uploads:
            raise client_error("PutObject")
        self.backend.put(Bucket, Key, Path(Filename).read_bytes())
        self.backend.uploads.append({"key": Key, "extra_args": ExtraArgs})

    async def download_file(self, Bucket, Key, Filename, **kwargs):
        if (Bucket, Key) not in self.backend.objects:
            raise client_error("HeadObject", code="404")
        Path(Filename).write_bytes(self.backend.objects[(Bucket, Key)])
        self.backend.downloads.append(Key)


class FakeSession:
    """Stands in for aioboto3.Session."""

    def __init__(self, backend: FakeS3Backend):
        self.backend = backend
        self.client_kwargs: List[dict] = []

    def client(self, service_name: str, **kwargs):
        assert service_name == "s3"
        self.client_kwargs.append(kwargs)
        return FakeS3Client(self.backend)


class FakeSource:
    password = ""


class FakeExporter:
    """Exporter double recording calls instead of running database clients."""

    def __init__(self, name: str, payload_name: str, content: bytes = b"dump", fail: bool = False):
        self.name = name
        self.payload_name = payload_name
        self.content = content
        self.fail = fail
        self.source = FakeSource()
        self.exported: List[Path] = []
        self.restored: List[Path] = []
        self.restored_bytes: List[bytes] = []
        self.post_checks = 0

    def check_export_dependencies(self):
        pass

    def check_restore_dependencies(self):
        pass

    def dump_command(self):
        return [f"dump-{self.name}"]

    async def export(self, output_dir: Path) -> Path:
        if self.fail:
            from openedx_snapshot.exceptions import CommandError
            raise CommandError(f"dump-{self.name}", 2, "boom")
        output_dir.mkdir(parents=True, exist_ok=True)
        path = output_dir / self.payload_name
        path.write_bytes(gzip.compress(self.content))
        self.exported.append(path)
        return path

    def describe_restore(self, payload_path: Path) -> str:
        return f"restore-{self.name} < {payload_path}"

    async def restore(self, payload_path: Path) -> None:
        self.restored.append(payload_path)
        self.restored_bytes.append(payload_path.read_bytes())

    async def post_check(self) -> str:
        self.post_checks += 1
        return "ok"


@pytest.fixture
def s3_backend():
    return FakeS3Backend()


@pytest.fixture
def fake_session(s3_backend):
    return FakeSession(s3_backend)


@pytest.fixture
def store_config():
    return StoreConfig(bucket_url="s3://dagdata/dbbackup", prefix="mylcafedb")


@pytest.fixture
def store(store_config, fake_session):
    return SnapshotStore(store_config, session=fake_session)


@pytest.fixture
def snapshot_config(tmp_path, store_config):
    return SnapshotConfig(
        store=store_config,
        backup=BackupConfig(backup_root=tmp_path / "data_backup"),
        restore=RestoreConfig(workdir=tmp_path / "restore"),
    )


@pytest.fixture
def mock_services():
    services = MagicMock()
    services.stop = AsyncMock(return_value=True)
    services.start = AsyncMock(return_value=True)
    services.tutor = MagicMock(side_effect=lambda *args: ["tutor", "local", *args])
    return services


@pytest.fixture
def fake_exporters():
    return {
        "mysql": FakeExporter("mysql", "mysql.sql.gz", b"CREATE DATABASE openedx;"),
        "mongodb": FakeExporter("mongodb", "mongodb.archive.gz", b"mongo-archive"),
    }
