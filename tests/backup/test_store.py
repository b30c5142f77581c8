"""Tests for the S3 snapshot store."""

from unittest.mock import patch

import pytest

from openedx_snapshot.backup.store import SnapshotStore, parse_s3_url
from openedx_snapshot.config import StoreConfig
from openedx_snapshot.exceptions import ConfigurationError, TransportError

from conftest import TS


def test_parse_s3_url():
    assert parse_s3_url("s3://dagdata/dbbackup") == ("dagdata", "dbbackup")
    assert parse_s3_url("s3://dagdata/") == ("dagdata", "")
    assert parse_s3_url("s3://dagdata/a/b/") == ("dagdata", "a/b")

    with pytest.raises(ConfigurationError):
        parse_s3_url("https://dagdata")


def test_store_requires_bucket(fake_session):
    with pytest.raises(ConfigurationError, match="S3_BUCKET"):
        SnapshotStore(StoreConfig(), session=fake_session)


def test_store_layout(store):
    assert store.bucket == "dagdata"
    assert store.location == "s3://dagdata/dbbackup/mylcafedb"
    assert store.key_for(TS, f"{TS}.tar.gz") == f"dbbackup/mylcafedb/{TS}/{TS}.tar.gz"
    assert store.url_for(TS) == f"s3://dagdata/dbbackup/mylcafedb/{TS}/"


def test_store_layout_without_path(fake_session):
    store = SnapshotStore(StoreConfig(bucket_url="s3://dagdata"), session=fake_session)

    assert store.location == "s3://dagdata"
    assert store.key_for(TS, "x") == f"{TS}/x"


def test_store_creates_session_from_profile():
    config = StoreConfig(bucket_url="s3://dagdata", aws_profile="backup", aws_region="eu-west-1")

    with patch("openedx_snapshot.backup.store.aioboto3.Session") as mock_session:
        SnapshotStore(config)

    mock_session.assert_called_once_with(profile_name="backup", region_name="eu-west-1")


@pytest.mark.asyncio
async def test_list_snapshots(store, s3_backend):
    for snapshot_id in ("20251108T184125Z", "20250101T000000Z", "20251231T235959Z"):
        s3_backend.put("dagdata", f"dbbackup/mylcafedb/{snapshot_id}/{snapshot_id}.tar.gz", b"x")
        s3_backend.put("dagdata", f"dbbackup/mylcafedb/{snapshot_id}/{snapshot_id}.tar.gz.sha256", b"x")
    # Other prefixes and buckets are not snapshots of this store
    s3_backend.put("dagdata", "dbbackup/other/20990101T000000Z/x", b"x")
    s3_backend.put("elsewhere", "dbbackup/mylcafedb/20990101T000000Z/x", b"x")

    snapshots = await store.list_snapshots()

    assert snapshots == ["20250101T000000Z", "20251108T184125Z", "20251231T235959Z"]


@pytest.mark.asyncio
async def test_list_snapshots_empty(store):
    assert await store.list_snapshots() == []


@pytest.mark.asyncio
async def test_list_snapshots_failure(store, s3_backend):
    s3_backend.fail_listing = True

    with pytest.raises(TransportError, match="Failed to list s3://dagdata/dbbackup/mylcafedb/"):
        await store.list_snapshots()


@pytest.mark.asyncio
async def test_list_snapshots_uses_endpoint_url(fake_session):
    config = StoreConfig(bucket_url="s3://dagdata", endpoint_url="http://minio:9000")
    store = SnapshotStore(config, session=fake_session)

    await store.list_snapshots()

    assert fake_session.client_kwargs == [{"endpoint_url": "http://minio:9000"}]


@pytest.mark.asyncio
async def test_upload(store, s3_backend, tmp_path):
    archive = tmp_path / f"{TS}.tar.gz"
    archive.write_bytes(b"archive-bytes")

    key = await store.upload(archive, TS)

    assert key == f"dbbackup/mylcafedb/{TS}/{TS}.tar.gz"
    assert s3_backend.objects[("dagdata", key)] == b"archive-bytes"
    assert s3_backend.uploads[0]["extra_args"] is None


@pytest.mark.asyncio
async def test_upload_extra_args(fake_session, s3_backend, tmp_path):
    config = StoreConfig(
        bucket_url="s3://dagdata",
        storage_class="STANDARD_IA",
        sse="aws:kms",
        sse_kms_key_id="alias/backups",
    )
    store = SnapshotStore(config, session=fake_session)
    archive = tmp_path / f"{TS}.tar.gz"
    archive.write_bytes(b"x")

    await store.upload(archive, TS)

    assert s3_backend.uploads[0]["extra_args"] == {
        "StorageClass": "STANDARD_IA",
        "ServerSideEncryption": "aws:kms",
        "SSEKMSKeyId": "alias/backups",
    }


@pytest.mark.asyncio
async def test_upload_failure(store, s3_backend, tmp_path):
    s3_backend.fail_uploads = True
    archive = tmp_path / f"{TS}.tar.gz"
    archive.write_bytes(b"x")

    with pytest.raises(TransportError, match="Failed to upload"):
        await store.upload(archive, TS)


@pytest.mark.asyncio
async def test_download(store, s3_backend, tmp_path):
    s3_backend.put("dagdata", f"dbbackup/mylcafedb/{TS}/{TS}.tar.gz", b"remote")
    local = tmp_path / TS / f"{TS}.tar.gz"

    assert await store.download(TS, f"{TS}.tar.gz", local) is True
    assert local.read_bytes() == b"remote"
    assert not (tmp_path / TS / f"{TS}.tar.gz.part").exists()


@pytest.mark.asyncio
async def test_download_cache_hit(store, s3_backend, tmp_path):
    s3_backend.put("dagdata", f"dbbackup/mylcafedb/{TS}/{TS}.tar.gz", b"remote")
    local = tmp_path / f"{TS}.tar.gz"
    local.write_bytes(b"cached")

    assert await store.download(TS, f"{TS}.tar.gz", local) is False
    assert local.read_bytes() == b"cached"
    assert s3_backend.downloads == []

    assert await store.download(TS, f"{TS}.tar.gz", local, force=True) is True
    assert local.read_bytes() == b"remote"


@pytest.mark.asyncio
async def test_download_missing_object(store, tmp_path):
    local = tmp_path / f"{TS}.tar.gz"

    with pytest.raises(TransportError, match="Failed to download"):
        await store.download(TS, f"{TS}.tar.gz", local)

    assert not local.exists()
    assert not (tmp_path / f"{TS}.tar.gz.part").exists()


@pytest.mark.asyncio
async def test_download_interrupted_leaves_no_partial_file(store, s3_backend, tmp_path):
    """A transfer that dies midway must not leave anything that looks cached."""
    local = tmp_path / f"{TS}.tar.gz"

    async def broken_download(self, Bucket, Key, Filename, **kwargs):
        with open(Filename, "wb") as f:
            f.write(b"half")
        raise ConnectionResetError("connection reset")

    with patch("conftest.FakeS3Client.download_file", broken_download):
        with pytest.raises(TransportError):
            await store.download(TS, f"{TS}.tar.gz", local)

    assert not local.exists()
    assert not (tmp_path / f"{TS}.tar.gz.part").exists()
