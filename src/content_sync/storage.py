"""S3-compatible object storage for restored file attachments.

Used only for attachment persistence, never in the content dedup path.
"""

import asyncio
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
import structlog

from content_sync.core.errors import StorageError

logger = structlog.get_logger(__name__)

DEFAULT_PRESIGNED_URL_TTL_SECONDS = 3600


class ObjectStorage:
    """Upload attachments to a bucket and hand out presigned download URLs.

    boto3 is synchronous, so calls run in a worker thread to keep the
    event loop free.

    Example:
        storage = ObjectStorage(bucket="attachments", region_name="us-east-1")
        key = await storage.upload_file(data, "slack-files/src/F1/report.pdf")
        url = await storage.generate_presigned_download_url(key)
    """

    def __init__(
        self,
        bucket: str,
        region_name: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        client: Any = None,
    ) -> None:
        self._bucket = bucket
        self._region_name = region_name
        self._endpoint_url = endpoint_url
        self._aws_access_key_id = aws_access_key_id
        self._aws_secret_access_key = aws_secret_access_key
        self._client = client

    @property
    def bucket(self) -> str:
        """Return the target bucket name."""
        return self._bucket

    def _get_client(self):
        """Get or create the S3 client."""
        if self._client is None:
            self._client = boto3.client(
                "s3",
                aws_access_key_id=self._aws_access_key_id,
                aws_secret_access_key=self._aws_secret_access_key,
                region_name=self._region_name,
                endpoint_url=self._endpoint_url,
            )
        return self._client

    async def upload_file(
        self,
        data: bytes,
        key: str,
        content_type: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> str:
        """
        Upload bytes under a key.

        Args:
            data: File content
            key: Object key
            content_type: MIME type stored with the object
            metadata: User metadata stored with the object

        Returns:
            The object key

        Raises:
            StorageError: If the upload fails
        """
        params: dict[str, Any] = {"Bucket": self._bucket, "Key": key, "Body": data}
        if content_type:
            params["ContentType"] = content_type
        if metadata:
            params["Metadata"] = {k: str(v) for k, v in metadata.items()}
        try:
            client = self._get_client()
            await asyncio.to_thread(client.put_object, **params)
        except (BotoCoreError, ClientError) as e:
            raise StorageError("upload_file", str(e)) from e
        logger.info("attachment_uploaded", key=key, size_bytes=len(data))
        return key

    async def generate_presigned_download_url(
        self,
        key: str,
        expires_in: int = DEFAULT_PRESIGNED_URL_TTL_SECONDS,
    ) -> str:
        """Create a time-limited download URL for a stored object."""
        try:
            client = self._get_client()
            return await asyncio.to_thread(
                client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError("generate_presigned_download_url", str(e)) from e
