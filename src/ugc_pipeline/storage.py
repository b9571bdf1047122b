import logging
from typing import Any, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from ugc_pipeline.config import settings

logger = logging.getLogger(__name__)

DOWNLOAD_FILENAME = "ugc-video.mp4"


class AssetStoreError(RuntimeError):
    pass


class StoredAsset(BaseModel):
    public_id: str
    secure_url: str
    thumbnail_url: str | None = None


class AssetStore(Protocol):
    def upload(self, data: bytes, folder: str, asset_id: str, thumbnail: bytes | None = None) -> StoredAsset: ...

    def signed_url(self, public_id: str, ttl_seconds: int) -> str: ...


class S3AssetStore:
    """Durable video storage on any S3-compatible bucket (R2, S3, MinIO).

    Objects are keyed ``{folder}/{asset_id}.mp4``; the key doubles as the
    public id. Download links are presigned GETs that force an attachment.
    """

    def __init__(self, bucket: str | None = None, public_url: str | None = None, client: Any = None) -> None:
        self.bucket = bucket or settings.s3_bucket
        self.public_url = (public_url if public_url is not None else settings.s3_public_url).rstrip("/")
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=settings.s3_endpoint_url or None,
                aws_access_key_id=settings.s3_access_key_id or None,
                aws_secret_access_key=settings.s3_secret_access_key or None,
                config=BotoConfig(signature_version="s3v4"),
                region_name=settings.s3_region,
            )
        return self._client

    def _object_url(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        return f"{self.client.meta.endpoint_url.rstrip('/')}/{self.bucket}/{key}"

    def upload(self, data: bytes, folder: str, asset_id: str, thumbnail: bytes | None = None) -> StoredAsset:
        key = f"{folder.strip('/')}/{asset_id}.mp4"
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType="video/mp4")
        except (BotoCoreError, ClientError) as exc:
            logger.error("Upload failed for key=%s: %s", key, exc)
            raise AssetStoreError(f"Failed to upload video: {exc}") from exc
        logger.info("Uploaded %d bytes to %s/%s", len(data), self.bucket, key)

        thumbnail_url = None
        if thumbnail:
            thumb_key = f"{folder.strip('/')}/{asset_id}.jpg"
            try:
                self.client.put_object(Bucket=self.bucket, Key=thumb_key, Body=thumbnail, ContentType="image/jpeg")
                thumbnail_url = self._object_url(thumb_key)
            except (BotoCoreError, ClientError) as exc:
                logger.warning("Thumbnail upload failed for key=%s: %s", thumb_key, exc)

        return StoredAsset(public_id=key, secure_url=self._object_url(key), thumbnail_url=thumbnail_url)

    def signed_url(self, public_id: str, ttl_seconds: int) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={
                    "Bucket": self.bucket,
                    "Key": public_id,
                    "ResponseContentType": "video/mp4",
                    "ResponseContentDisposition": f'attachment; filename="{DOWNLOAD_FILENAME}"',
                },
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as exc:
            raise AssetStoreError(f"Failed to sign download url: {exc}") from exc
