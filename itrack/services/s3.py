"""AWS S3: attendance photo storage."""
import asyncio
import uuid

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from itrack.services.photos import PhotoProviderError, UploadResult


class S3PhotoProvider:
    name = "s3"

    def __init__(self, bucket: str, region: str, access_key_id: str = "", secret_access_key: str = ""):
        self.bucket = bucket
        self.region = region
        self._s3 = boto3.client(
            "s3",
            region_name=region,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
        )

    def _put_sync(self, key: str, body: bytes, content_type: str) -> None:
        self._s3.put_object(Bucket=self.bucket, Key=key, Body=body, ContentType=content_type or "image/jpeg")

    async def upload(self, data: bytes, filename: str, content_type: str) -> UploadResult:
        """Upload photo; the object key keeps the suggested name's extension."""
        ext = (filename or "").split(".")[-1] or "jpg"
        key = f"attendance-photos/{uuid.uuid4().hex}.{ext}"
        try:
            await asyncio.to_thread(self._put_sync, key, data, content_type)
        except (BotoCoreError, ClientError) as e:
            raise PhotoProviderError(f"S3 upload failed: {e}") from e
        url = f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"
        return UploadResult(url=url, provider=self.name, key=key)

