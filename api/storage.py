"""Cloudflare R2 blob store, reached through the S3 API with boto3."""

import logging
import os
import re
from dataclasses import dataclass
from typing import Iterator, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

from errors import IngestTimeout, NetworkError, ObjectNotFound, StorageError

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=31536000"
CHUNK_SIZE = 64 * 1024
NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


@dataclass
class ObjectInfo:
    size: int
    content_type: str


@dataclass
class StoredObject:
    body: Iterator[bytes]
    content_length: int
    content_type: str


def _ascii(value) -> str:
    # S3 user metadata travels as HTTP headers: US-ASCII, no control characters
    text = str(value).encode("ascii", "replace").decode("ascii")
    return CONTROL_CHARS.sub(" ", text)


def _translate(e: Exception, action: str, key: str) -> Exception:
    if isinstance(e, (ConnectTimeoutError, ReadTimeoutError)):
        return IngestTimeout(f"Storage {action} timed out for {key}: {e}")
    if isinstance(e, BotoConnectionError):
        return NetworkError(f"Storage {action} could not reach R2 for {key}: {e}")
    if isinstance(e, ClientError):
        code = str(e.response.get("Error", {}).get("Code", ""))
        if code in NOT_FOUND_CODES:
            return ObjectNotFound(f"Object not found: {key}")
        return StorageError(f"Cloudflare R2 {action} failed for {key}: {code or e}")
    return StorageError(f"Cloudflare R2 {action} failed for {key}: {e}")


class R2Storage:
    def __init__(self, client, bucket: str, public_base_url: str = ""):
        self.client = client
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_env(cls) -> "R2Storage":
        config = Config(
            connect_timeout=float(os.environ.get("STORAGE_CONNECT_TIMEOUT", "5")),
            read_timeout=float(os.environ.get("STORAGE_READ_TIMEOUT", "30")),
            retries={
                "mode": "standard",
                "max_attempts": int(os.environ.get("STORAGE_MAX_ATTEMPTS", "3")),
            },
        )
        client = boto3.client(
            "s3",
            endpoint_url=os.environ.get("CLOUDFLARE_R2_ENDPOINT") or None,
            aws_access_key_id=os.environ.get("CLOUDFLARE_R2_ACCESS_KEY_ID") or None,
            aws_secret_access_key=os.environ.get("CLOUDFLARE_R2_SECRET_ACCESS_KEY") or None,
            region_name="auto",
            config=config,
        )
        bucket = os.environ.get("CLOUDFLARE_R2_BUCKET_NAME", "")
        if not bucket:
            logger.warning("CLOUDFLARE_R2_BUCKET_NAME not configured, storage calls will fail")
        return cls(client, bucket, os.environ.get("CLOUDFLARE_R2_PUBLIC_URL", ""))

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"/audio/{key}"

    def put(self, key: str, data: bytes, content_type: str, metadata: Optional[dict] = None) -> dict:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl=CACHE_CONTROL,
                Metadata={k: _ascii(v) for k, v in (metadata or {}).items()},
            )
        except (BotoCoreError, ClientError) as e:
            raise _translate(e, "upload", key) from e
        logger.info(f"Stored {key} ({len(data)} bytes)")
        return {"key": key, "url": self.public_url(key)}

    def stat(self, key: str) -> ObjectInfo:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise _translate(e, "head", key) from e
        return ObjectInfo(
            size=response["ContentLength"],
            content_type=response.get("ContentType") or "audio/mpeg",
        )

    def get(self, key: str, byte_range: Optional[tuple[int, int]] = None) -> StoredObject:
        """Fetch an object, or the inclusive byte range (start, end) of it."""
        kwargs = {"Bucket": self.bucket, "Key": key}
        if byte_range is not None:
            kwargs["Range"] = f"bytes={byte_range[0]}-{byte_range[1]}"
        try:
            response = self.client.get_object(**kwargs)
        except (BotoCoreError, ClientError) as e:
            raise _translate(e, "download", key) from e
        return StoredObject(
            body=response["Body"].iter_chunks(CHUNK_SIZE),
            content_length=response["ContentLength"],
            content_type=response.get("ContentType") or "audio/mpeg",
        )

    def list(self, prefix: Optional[str] = None) -> list[str]:
        kwargs = {"Bucket": self.bucket}
        if prefix:
            kwargs["Prefix"] = prefix
        keys = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(**kwargs):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        except (BotoCoreError, ClientError) as e:
            raise _translate(e, "list", prefix or "*") from e
        return keys

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise _translate(e, "delete", key) from e
        logger.info(f"Deleted object {key}")
