"""Upload collaborators: local artifact in, durable reference out."""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

RENDER_KEY_PREFIX = "renders"


class UploadError(Exception):
    """The artifact could not be stored durably."""


def render_key(job_id: str) -> str:
    return f"{RENDER_KEY_PREFIX}/{job_id}.mp4"


class Uploader(ABC):
    @abstractmethod
    async def upload(self, local_path: Path, job_id: str) -> str:
        """Store ``local_path`` and return its durable reference (URL).

        Raises:
            UploadError: the file could not be stored
        """


class LocalUploader(Uploader):
    """Copies renders into a directory, optionally served at ``public_base_url``."""

    def __init__(self, storage_dir: str, public_base_url: Optional[str] = None):
        self.storage_dir = Path(storage_dir)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    async def upload(self, local_path: Path, job_id: str) -> str:
        destination = self.storage_dir / f"{job_id}.mp4"
        try:
            await asyncio.to_thread(self._copy, Path(local_path), destination)
        except OSError as e:
            raise UploadError(f"Could not copy {local_path} to {destination}: {e}") from e

        if self.public_base_url:
            return f"{self.public_base_url}/{render_key(job_id)}"
        return destination.resolve().as_uri()

    @staticmethod
    def _copy(source: Path, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        # Copy to a temp name first so readers never see a partial file
        partial = destination.with_suffix(".part")
        shutil.copyfile(source, partial)
        partial.replace(destination)


class S3Uploader(Uploader):
    """Uploads renders to an S3-compatible bucket (AWS S3, Cloudflare R2, MinIO)."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        region: str = "auto",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        cdn_base_url: Optional[str] = None,
        client: Any = None,
    ):
        self.bucket = bucket
        self.endpoint_url = endpoint_url.rstrip("/") if endpoint_url else None
        self.cdn_base_url = cdn_base_url.rstrip("/") if cdn_base_url else None
        if client is None:
            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                region_name=region,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
            )
        self._client = client

    async def upload(self, local_path: Path, job_id: str) -> str:
        key = render_key(job_id)
        try:
            await asyncio.to_thread(
                self._client.upload_file,
                str(local_path),
                self.bucket,
                key,
                ExtraArgs={"ContentType": "video/mp4"},
            )
        except (BotoCoreError, ClientError, OSError) as e:
            raise UploadError(f"Upload of {key} to bucket {self.bucket} failed: {e}") from e

        logger.info("Uploaded %s", key, extra={"job_id": job_id, "event": "upload_finished"})
        return self.public_url(key)

    def public_url(self, key: str) -> str:
        if self.cdn_base_url:
            return f"{self.cdn_base_url}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"


def build_uploader(settings: Any) -> Uploader:
    if settings.storage_backend == "s3":
        return S3Uploader(
            settings.s3_bucket,
            endpoint_url=settings.s3_endpoint_url,
            region=settings.s3_region,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
            cdn_base_url=settings.cdn_base_url,
        )
    return LocalUploader(settings.storage_dir, settings.public_base_url)
