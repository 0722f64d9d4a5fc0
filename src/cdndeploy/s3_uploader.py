# src/cdndeploy/s3_uploader.py
from __future__ import annotations

import asyncio
import gzip
import logging
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from cdndeploy.errors import BenignConflictError, TransientStoreError, UnclassifiedCommandError
from cdndeploy.gate import CommandGate
from cdndeploy.rewriter import public_url

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=31536000"
CONTENT_ENCODING = "gzip"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_RETRY_DELAY = 0.1

# put_object(IfNoneMatch="*") refusals: the key is already there
_EXISTS_CODES = {"PreconditionFailed", "ConditionalRequestConflict", "412"}
_DENIED_CODES = {"AccessDenied", "403"}


class Uploader(Protocol):
    async def upload(self, local_path: str, destination: str) -> str: ...


def split_s3_url(url: str) -> tuple[str, str]:
    # "s3://bucket/a/b.js" -> ("bucket", "a/b.js")
    if not url.startswith("s3://"):
        raise ValueError(f"Not an s3:// destination: {url!r}")
    bucket, _, key = url[len("s3://") :].partition("/")
    if not bucket or not key:
        raise ValueError(f"Destination needs both bucket and key: {url!r}")
    return bucket, key


def content_type_for(filename: str) -> str:
    return mimetypes.guess_type(filename)[0] or DEFAULT_CONTENT_TYPE


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


@dataclass
class S3Uploader:
    """
    Ships one artifact to its versioned key:
      1) put gzip bytes (create-only; an existing object is a benign conflict)
      2) set Cache-Control / Content-Encoding / Content-Type (retried forever)
      3) grant public read (retried forever)
    Re-running on an already uploaded artifact is a no-op outcome.
    """

    gate: CommandGate
    target: str
    target_url: str | None = None
    region: str | None = None
    retry_delay: float = DEFAULT_RETRY_DELAY
    client: Any = None
    uploaded: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.client is None:
            # region may be None; boto3 will use env/config
            self.client = boto3.client("s3", region_name=self.region)

    async def upload(self, local_path: str, destination: str) -> str:
        bucket, key = split_s3_url(destination)
        content_type = content_type_for(key)

        try:
            await self.gate.run(self._put, bucket, key, local_path)
        except BenignConflictError as e:
            logger.info("%s already exists, assuming an earlier interrupted run: %s", destination, e)

        await self._retry_forever(
            f"set metadata on {destination}",
            self._set_metadata,
            bucket,
            key,
            content_type,
        )
        await self._retry_forever(f"grant public read on {destination}", self._grant_public_read, bucket, key)

        url = public_url(self.target, self.target_url, destination)
        self.uploaded.append(url)
        logger.info("uploaded %s", url)
        return url

    def _put(self, bucket: str, key: str, local_path: str) -> None:
        body = gzip.compress(Path(local_path).read_bytes(), mtime=0)
        logger.info("put s3://%s/%s (%d bytes gzipped)", bucket, key, len(body))
        try:
            self.client.put_object(Bucket=bucket, Key=key, Body=body, IfNoneMatch="*")
        except ClientError as e:
            code = _error_code(e)
            if code in _EXISTS_CODES:
                raise BenignConflictError(f"s3://{bucket}/{key}: {code}") from e
            if code in _DENIED_CODES and self._exists(bucket, key):
                raise BenignConflictError(f"s3://{bucket}/{key}: {code} on existing object") from e
            raise UnclassifiedCommandError(f"put s3://{bucket}/{key}", message=f"put s3://{bucket}/{key} failed: {e}") from e
        except BotoCoreError as e:
            raise UnclassifiedCommandError(f"put s3://{bucket}/{key}", message=f"put s3://{bucket}/{key} failed: {e}") from e

    def _exists(self, bucket: str, key: str) -> bool:
        try:
            self.client.head_object(Bucket=bucket, Key=key)
        except ClientError:
            return False
        return True

    def _set_metadata(self, bucket: str, key: str, content_type: str) -> None:
        try:
            self.client.copy_object(
                Bucket=bucket,
                Key=key,
                CopySource={"Bucket": bucket, "Key": key},
                MetadataDirective="REPLACE",
                CacheControl=CACHE_CONTROL,
                ContentEncoding=CONTENT_ENCODING,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            raise TransientStoreError(str(e)) from e

    def _grant_public_read(self, bucket: str, key: str) -> None:
        try:
            self.client.put_object_acl(Bucket=bucket, Key=key, ACL="public-read")
        except (ClientError, BotoCoreError) as e:
            raise TransientStoreError(str(e)) from e

    async def _retry_forever(self, what: str, fn: Callable[..., None], *args: Any) -> None:
        # Fixed delay, no attempt cap: the store's metadata/ACL calls fail spuriously.
        attempt = 0
        while True:
            attempt += 1
            try:
                await self.gate.run(fn, *args)
                return
            except TransientStoreError as e:
                logger.warning("%s failed (attempt %d), retrying in %.2fs: %s", what, attempt, self.retry_delay, e)
                await asyncio.sleep(self.retry_delay)


@dataclass
class DryRunUploader:
    """Computes URLs without touching the object store."""

    target: str
    target_url: str | None = None
    uploaded: list[str] = field(default_factory=list)

    async def upload(self, local_path: str, destination: str) -> str:
        url = public_url(self.target, self.target_url, destination)
        self.uploaded.append(url)
        logger.info("[dry-run] would upload %s -> %s (%s)", local_path, destination, url)
        return url
