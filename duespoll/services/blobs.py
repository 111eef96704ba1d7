"""S3-backed blob store for payment proofs and candidate images."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError  # type: ignore[import-untyped]

from duespoll.core.config import Settings, get_settings
from duespoll.services.errors import BlobStoreError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class BlobLocation:
    """Where an uploaded object lives and how clients fetch it."""

    path: str
    url: str


class BlobStore:
    """Upload, resolve and delete objects addressed by namespaced paths."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        s3_client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._s3_client_factory = s3_client_factory or self._default_s3_client
        self._s3_client: Any | None = None
        self._bucket_ready = False

    @property
    def bucket(self) -> str:
        return self._settings.blob_bucket

    def _default_s3_client(self) -> Any:
        return boto3.client(
            "s3",
            region_name=self._settings.aws_region,
            endpoint_url=self._settings.s3_endpoint_url,
        )

    def _get_s3_client(self) -> Any:
        if self._s3_client is None:
            self._s3_client = self._s3_client_factory()
        return self._s3_client

    def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        client = self._get_s3_client()
        try:
            client.head_bucket(Bucket=self.bucket)
        except ClientError:
            create_params: dict[str, Any] = {"Bucket": self.bucket}
            if self._settings.aws_region != "us-east-1" and self._settings.s3_endpoint_url is None:
                create_params["CreateBucketConfiguration"] = {
                    "LocationConstraint": self._settings.aws_region
                }
            client.create_bucket(**create_params)
        self._bucket_ready = True

    def upload(self, path: str, data: bytes, *, content_type: str | None = None) -> BlobLocation:
        """Store ``data`` under ``path`` and return its location handle."""

        try:
            self._ensure_bucket()
            self._get_s3_client().put_object(
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type or "application/octet-stream",
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("blob upload failed", extra={"path": path, "error": str(exc)})
            raise BlobStoreError("Failed to upload file. Please try again.", path=path) from exc

        location = BlobLocation(path=path, url=self.get_public_url(path))
        logger.info("uploaded blob", extra={"path": path, "size": len(data)})
        return location

    def get_public_url(self, path: str) -> str:
        """Return a time-limited GET URL for the object at ``path``."""

        try:
            return self._get_s3_client().generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": path},
                ExpiresIn=self._settings.blob_url_expiry_seconds,
            )
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError("Failed to resolve file URL.", path=path) from exc

    def delete(self, path: str) -> None:
        try:
            self._get_s3_client().delete_object(Bucket=self.bucket, Key=path)
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError("Failed to delete file.", path=path) from exc

    def delete_quietly(self, path: str | None) -> bool:
        """Best-effort delete used for cleanup; failures only log a warning."""

        if not path:
            return False
        try:
            self.delete(path)
        except BlobStoreError as exc:
            logger.warning(
                "could not delete blob",
                extra={"path": path, "error": str(exc.__cause__ or exc)},
            )
            return False
        return True


__all__ = ["BlobLocation", "BlobStore"]
