"""
Blob storage for chart screenshots and report workbooks.

Both backends return (url, error) tuples instead of raising.
"""

import asyncio
import os
from typing import Optional, Tuple

from .config import STORAGE_R2, ZzapConfig

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
WEBP_CONTENT_TYPE = "image/webp"


class BaseStorage:
    def upload(self, data: bytes, key: str, content_type: str) -> Tuple[Optional[str], Optional[str]]:
        raise NotImplementedError

    async def upload_async(self, data: bytes, key: str, content_type: str) -> Tuple[Optional[str], Optional[str]]:
        """Upload in the thread pool so the event loop keeps running."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self.upload, data, key, content_type)


class R2Storage(BaseStorage):
    """Cloudflare R2 through the S3 API. The client is created on first use."""

    def __init__(self, account_id: str, access_key: str, secret_key: str, bucket: str, public_url: str):
        self.account_id = account_id
        self.access_key = access_key
        self.secret_key = secret_key
        self.bucket = bucket
        self.public_url = public_url
        self._client = None

    @classmethod
    def from_env(cls) -> "R2Storage":
        return cls(
            account_id=os.environ.get("R2_ACCOUNT_ID", ""),
            access_key=os.environ.get("R2_ACCESS_KEY_ID", ""),
            secret_key=os.environ.get("R2_SECRET_ACCESS_KEY", ""),
            bucket=os.environ.get("R2_BUCKET_NAME", "zzap-reports"),
            public_url=os.environ.get("R2_PUBLIC_URL", ""),
        )

    def get_client(self):
        """Get or create the S3 client."""
        if self._client is not None:
            return self._client, None

        if not all([self.account_id, self.access_key, self.secret_key]):
            return None, "R2 configuration incomplete"

        import boto3
        from botocore.config import Config

        self._client = boto3.client(
            's3',
            endpoint_url=f"https://{self.account_id}.r2.cloudflarestorage.com",
            aws_access_key_id=self.access_key,
            aws_secret_access_key=self.secret_key,
            config=Config(signature_version='s3v4', retries={'max_attempts': 3})
        )
        return self._client, None

    def upload(self, data: bytes, key: str, content_type: str) -> Tuple[Optional[str], Optional[str]]:
        if not self.public_url:
            return None, "R2_PUBLIC_URL not configured"

        client, error = self.get_client()
        if error:
            return None, error

        try:
            client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
            return f"{self.public_url.rstrip('/')}/{key}", None
        except Exception as e:
            return None, f"R2 upload error: {str(e)[:200]}"


class LocalStorage(BaseStorage):
    """Files under `directory`; URLs are `public_url/<key>` or the file path."""

    def __init__(self, directory: str, public_url: str = ""):
        self.directory = directory
        self.public_url = public_url

    def path_for(self, key: str) -> str:
        path = os.path.normpath(os.path.join(self.directory, key))
        if not path.startswith(os.path.normpath(self.directory) + os.sep):
            raise ValueError(f"Key escapes storage directory: {key!r}")
        return path

    def upload(self, data: bytes, key: str, content_type: str) -> Tuple[Optional[str], Optional[str]]:
        try:
            path = self.path_for(key)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'wb') as f:
                f.write(data)
        except (OSError, ValueError) as e:
            return None, f"Local upload error: {str(e)[:200]}"
        if self.public_url:
            return f"{self.public_url.rstrip('/')}/{key}", None
        return path, None


def get_storage(config: ZzapConfig) -> BaseStorage:
    if config.storage_backend == STORAGE_R2:
        return R2Storage.from_env()
    return LocalStorage(os.path.join(config.write_dir, "uploads"), config.local_public_url)
