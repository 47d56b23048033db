# app/storage.py
# Stages local uploads in an S3-compatible bucket so Kling can fetch them by URL

import asyncio
import re
import time
from pathlib import Path
from uuid import uuid4

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import UploadError
from .logger import get_logger

logger = get_logger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def make_object_key(prefix: str, name: str) -> str:
    """<prefix>/<epoch-ms>-<uuid8>-<name>; the random part keeps same-millisecond uploads apart."""
    safe = _UNSAFE.sub("_", Path(name or "file").name).strip("._") or "file"
    return f"{prefix.strip('/')}/{int(time.time() * 1000)}-{uuid4().hex[:8]}-{safe}"


def build_s3_client(settings: Settings):
    client_kwargs = {
        "region_name": settings.S3_REGION,
        # custom endpoints (MinIO, R2, ...) need path-style addressing
        "config": Config(signature_version="s3v4", s3={"addressing_style": "path"}),
    }
    if settings.S3_ENDPOINT:
        client_kwargs["endpoint_url"] = settings.S3_ENDPOINT
    if settings.S3_ACCESS_KEY and settings.S3_SECRET_KEY:
        client_kwargs["aws_access_key_id"] = settings.S3_ACCESS_KEY
        client_kwargs["aws_secret_access_key"] = settings.S3_SECRET_KEY
    return boto3.session.Session().client("s3", **client_kwargs)


class ObjectStoreUploader:
    def __init__(self, client, bucket: str, expires_in: int = 86400, prefix: str = "kling-uploads"):
        self.client = client
        self.bucket = bucket
        self.expires_in = expires_in
        self.prefix = prefix

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStoreUploader":
        if not settings.S3_BUCKET:
            raise RuntimeError("S3_BUCKET is required when S3_ENABLED=true")
        return cls(
            build_s3_client(settings),
            settings.S3_BUCKET,
            expires_in=settings.S3_URL_EXPIRATION,
            prefix=settings.S3_KEY_PREFIX,
        )

    def upload_sync(self, path: Path, name: str, content_type: str | None) -> str:
        key = make_object_key(self.prefix, name)
        try:
            with open(path, "rb") as body:
                self.client.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=body,
                    ContentType=content_type or "application/octet-stream",
                )
            logger.info("Uploaded to S3: %s", key)

            url = self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.expires_in,
            )
        except (BotoCoreError, ClientError, OSError) as e:
            logger.error("S3 upload error for %s: %s", key, e)
            raise UploadError(f"Failed to upload to S3: {e}") from e

        logger.info("Presigned URL generated (expires in %ss)", self.expires_in)
        return url

    async def upload(self, path: Path, name: str, content_type: str | None) -> str:
        return await asyncio.to_thread(self.upload_sync, path, name, content_type)
