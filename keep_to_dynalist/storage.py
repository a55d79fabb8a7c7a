from __future__ import annotations

import hashlib
import logging
import mimetypes
from pathlib import Path
from typing import Any, Optional, Protocol

import boto3
from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError

from .config import R2Config


KEY_PREFIX = "gkeep"

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when an attachment could not be uploaded."""


class Uploader(Protocol):
    def upload(self, path: Path, mimetype: str = "") -> str:
        ...


def object_key(path: Path) -> str:
    """Content-addressed key so reruns overwrite instead of duplicating uploads."""

    digest = hashlib.sha1()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return f"{KEY_PREFIX}/{digest.hexdigest()[:12]}-{path.name}"


class R2Uploader:
    def __init__(self, config: R2Config, *, client: Optional[Any] = None) -> None:
        """Create an S3 client pointed at the account's R2 endpoint."""

        self.config = config
        self.client = client or boto3.client(
            "s3"
            ,endpoint_url=config.endpoint_url
            ,aws_access_key_id=config.access_key_id
            ,aws_secret_access_key=config.secret_access_key
            ,region_name="auto"
        )

    def public_url(self, key: str) -> str:
        return f"{self.config.public_url}/{key}"

    def upload(self, path: Path, mimetype: str = "") -> str:
        """Upload a local file and return its public URL."""

        try:
            key = object_key(path)
        except OSError as exc:
            raise StorageError(f"failed to read {path}: {exc}") from exc

        content_type = mimetype or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        try:
            self.client.upload_file(
                str(path)
                ,self.config.bucket_name
                ,key
                ,ExtraArgs={"ContentType": content_type}
            )
        except (Boto3Error, BotoCoreError, ClientError) as exc:
            raise StorageError(f"failed to upload {path.name} to R2: {exc}") from exc

        url = self.public_url(key)
        logger.info("Uploaded %s to %s", path, url)
        return url
