import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from core.config import AWS_AVATAR_BUCKET, AWS_AVATAR_PUBLIC_BASE_URL, AWS_REGION

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Upload to object storage failed."""


class S3Storage:
    """Object storage backed by a public-read S3 bucket."""

    def __init__(
        self,
        *,
        bucket: str = AWS_AVATAR_BUCKET,
        region: str = AWS_REGION,
        public_base_url: str = AWS_AVATAR_PUBLIC_BASE_URL,
        client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.public_base_url = public_base_url.rstrip("/")
        self._client = client

    @property
    def client(self):
        if self._client is None:
            # Credentials come from the standard AWS environment/instance chain
            self._client = boto3.session.Session().client("s3", region_name=self.region)
        return self._client

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def upload(self, *, key: str, data: bytes, content_type: str) -> str:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl="public, max-age=31536000",
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 upload failed for {self.bucket}/{key}: {e}")
            raise StorageError(str(e)) from e
        logger.info(f"Uploaded {len(data)} bytes to s3://{self.bucket}/{key}")
        return self.public_url(key)


_storage: Optional[S3Storage] = None


def get_storage() -> S3Storage:
    global _storage
    if _storage is None:
        _storage = S3Storage()
    return _storage
