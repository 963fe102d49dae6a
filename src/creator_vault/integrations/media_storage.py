"""Cloudflare R2 media storage via the S3-compatible boto3 client.

Issues presigned PUT URLs for creator uploads and presigned GET URLs for
entitled downloads. Object keys are namespaced per creator and bundle.
"""

from __future__ import annotations

import re
import uuid

import boto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from creator_vault.config import settings
from creator_vault.errors import ExternalProviderError

log = structlog.get_logger()

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def create_r2_client(
    account_id: str | None = None,
    access_key_id: str | None = None,
    secret_access_key: str | None = None,
):
    """Build an S3 client pointed at the account's R2 endpoint."""
    account_id = account_id or settings.R2_ACCOUNT_ID
    return boto3.client(
        "s3",
        endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
        aws_access_key_id=access_key_id or settings.R2_ACCESS_KEY_ID,
        aws_secret_access_key=secret_access_key or settings.R2_SECRET_ACCESS_KEY,
        config=BotoConfig(signature_version="s3v4"),
        region_name="auto",
    )


def build_object_key(creator_id: str, product_box_id: str, filename: str) -> str:
    """``creators/<creator>/<bundle>/<uuid>-<sanitised filename>``."""
    safe_name = _UNSAFE_CHARS.sub("_", filename).strip("._") or "file"
    return f"creators/{creator_id}/{product_box_id}/{uuid.uuid4().hex}-{safe_name[:120]}"


class MediaStorage:
    """Presigned URL issuance over one R2 bucket."""

    def __init__(
        self,
        client,
        bucket: str | None = None,
        public_base_url: str | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        self._client = client
        self._bucket = bucket or settings.R2_BUCKET
        self._public_base_url = (
            public_base_url if public_base_url is not None else settings.R2_PUBLIC_BASE_URL
        ).rstrip("/")
        self._ttl = ttl_seconds or settings.MEDIA_URL_TTL_SECONDS

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def presign_upload(self, object_key: str, content_type: str | None = None) -> str:
        params = {"Bucket": self._bucket, "Key": object_key}
        if content_type:
            params["ContentType"] = content_type
        return self._presign("put_object", params)

    def presign_download(self, object_key: str, filename: str | None = None) -> str:
        params = {"Bucket": self._bucket, "Key": object_key}
        if filename:
            params["ResponseContentDisposition"] = f'attachment; filename="{filename}"'
        return self._presign("get_object", params)

    def public_url(self, object_key: str) -> str | None:
        """Public URL for an object, when the bucket has a public domain."""
        if not self._public_base_url:
            return None
        return f"{self._public_base_url}/{object_key.lstrip('/')}"

    def _presign(self, operation: str, params: dict) -> str:
        try:
            return self._client.generate_presigned_url(
                operation, Params=params, ExpiresIn=self._ttl
            )
        except (BotoCoreError, ClientError) as exc:
            log.error("r2_presign_failed", operation=operation, key=params.get("Key"), error=str(exc))
            raise ExternalProviderError("r2") from exc
