"""S3 snapshot store: `<bucket>/<prefix>/<TS>/{<TS>.tar.gz, <TS>.tar.gz.sha256}`."""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from .._utils import logger
from ..config import StoreConfig
from ..exceptions import ConfigurationError, TransportError

PART_SUFFIX = ".part"


def parse_s3_url(url: str) -> Tuple[str, str]:
    """Split `s3://bucket/some/path` into ("bucket", "some/path")."""
    if not url.startswith("s3://"):
        raise ConfigurationError(f"Not an S3 URL: {url}")
    bucket, _, key = url[len("s3://"):].partition("/")
    if not bucket:
        raise ConfigurationError(f"S3 URL has no bucket: {url}")
    return bucket, key.strip("/")


class SnapshotStore:
    """List, upload and download snapshot objects under a timestamp prefix."""

    def __init__(self, config: StoreConfig, session: Optional[Any] = None):
        """Initialize store client.

        Args:
            config: Store configuration; bucket_url must be set
            session: aioboto3 Session (or compatible object). Created from the
                configured profile and region when not given.
        """
        if not config.enabled:
            raise ConfigurationError("S3_BUCKET is not set")

        self.config = config
        self.bucket, base = parse_s3_url(config.bucket_url)
        prefix = config.prefix.strip("/")
        self.root = "/".join(part for part in (base, prefix) if part)
        self.session = session or aioboto3.Session(
            profile_name=config.aws_profile,
            region_name=config.aws_region,
        )

    @property
    def location(self) -> str:
        """Store root as an s3:// URL."""
        return f"s3://{self.bucket}/{self.root}" if self.root else f"s3://{self.bucket}"

    def _client(self):
        kwargs: Dict[str, Any] = {}
        if self.config.endpoint_url:
            kwargs["endpoint_url"] = self.config.endpoint_url
        return self.session.client("s3", **kwargs)

    def _root_prefix(self) -> str:
        return f"{self.root}/" if self.root else ""

    def key_for(self, snapshot_id: str, filename: str) -> str:
        return f"{self._root_prefix()}{snapshot_id}/{filename}"

    def url_for(self, snapshot_id: str, filename: str = "") -> str:
        return f"s3://{self.bucket}/{self.key_for(snapshot_id, filename)}"

    def _upload_extra_args(self) -> Dict[str, str]:
        extra: Dict[str, str] = {}
        if self.config.storage_class:
            extra["StorageClass"] = self.config.storage_class
        if self.config.sse:
            extra["ServerSideEncryption"] = self.config.sse
            if self.config.sse == "aws:kms" and self.config.sse_kms_key_id:
                extra["SSEKMSKeyId"] = self.config.sse_kms_key_id
        return extra

    async def list_snapshots(self) -> List[str]:
        """List snapshot IDs, one level of prefixes below the store root.

        Returns:
            Sorted, de-duplicated prefix names without trailing separators

        Raises:
            TransportError: If listing fails
        """
        root_prefix = self._root_prefix()
        names = set()

        try:
            async with self._client() as s3:
                paginator = s3.get_paginator("list_objects_v2")
                async for page in paginator.paginate(
                    Bucket=self.bucket, Prefix=root_prefix, Delimiter="/"
                ):
                    for common in page.get("CommonPrefixes", []):
                        name = common["Prefix"][len(root_prefix):].strip("/")
                        if name:
                            names.add(name)
        except (BotoCoreError, ClientError) as e:
            raise TransportError(f"Failed to list {self.location}/: {e}") from e

        return sorted(names)

    async def upload(self, local_path: Path, snapshot_id: str) -> str:
        """Upload a file into the snapshot's prefix.

        Returns:
            Object key that was written

        Raises:
            TransportError: If the upload fails
        """
        key = self.key_for(snapshot_id, local_path.name)
        extra_args = self._upload_extra_args()

        try:
            async with self._client() as s3:
                await s3.upload_file(
                    str(local_path), self.bucket, key, ExtraArgs=extra_args or None
                )
        except (BotoCoreError, ClientError, OSError) as e:
            raise TransportError(f"Failed to upload {local_path.name} to s3://{self.bucket}/{key}: {e}") from e

        logger.info(f"Uploaded {local_path.name} -> s3://{self.bucket}/{key}")
        return key

    async def download(
        self,
        snapshot_id: str,
        filename: str,
        local_path: Path,
        force: bool = False,
    ) -> bool:
        """Download one snapshot object unless it is already cached locally.

        The object is written to `<local_path>.part` and renamed on success.

        Args:
            snapshot_id: Snapshot ID
            filename: Object name inside the snapshot prefix
            local_path: Destination file
            force: Download even if local_path exists

        Returns:
            True if a transfer happened, False on cache hit

        Raises:
            TransportError: If the download fails
        """
        if local_path.exists() and not force:
            logger.info(f"Found existing {local_path} (skipping download)")
            return False

        key = self.key_for(snapshot_id, filename)
        part_path = local_path.with_name(local_path.name + PART_SUFFIX)
        local_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Downloading {filename} ...")
        try:
            async with self._client() as s3:
                await s3.download_file(self.bucket, key, str(part_path))
        except (BotoCoreError, ClientError, OSError) as e:
            if part_path.exists():
                part_path.unlink()
            raise TransportError(f"Failed to download s3://{self.bucket}/{key}: {e}") from e

        os.replace(part_path, local_path)
        return True
