"""
S3/R2 storage helpers for avatar task inputs.

Task inputs that are not already public are uploaded under:
  digital-human/{task_id}/{uuid}{ext}

Non-public references are paths relative to PUBLIC_ASSET_ROOT (the web app's
public/ directory), e.g. "/uploads/voice.mp3".
"""

import os
import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Optional
from uuid import uuid4

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")

PUBLIC_ASSET_ROOT = os.getenv("PUBLIC_ASSET_ROOT", os.path.join(os.getcwd(), "public"))

PUBLIC_URL_SCHEMES = ("http://", "https://")


# ── Helpers ──────────────────────────────────────────────────────────────────

def is_public_url(ref: str) -> bool:
    """True when the provider can fetch ``ref`` directly."""
    return ref.startswith(PUBLIC_URL_SCHEMES)


def resolve_local_path(ref: str, root: Optional[str] = None) -> Path:
    """Map a non-public reference like "/uploads/a.png" onto the asset root."""
    return Path(root or PUBLIC_ASSET_ROOT) / ref.lstrip("/")


def task_asset_prefix(task_id: str) -> str:
    return f"digital-human/{task_id}"


def object_key(prefix: str, path: Path) -> str:
    return f"{prefix.rstrip('/')}/{uuid4().hex}{path.suffix.lower()}"


# ── R2 ───────────────────────────────────────────────────────────────────────

class R2Storage:
    """Uploads files to a Cloudflare R2 bucket and returns their public URLs."""

    def __init__(
        self,
        account_id: str = R2_ACCOUNT_ID,
        access_key_id: str = R2_ACCESS_KEY_ID,
        secret_access_key: str = R2_SECRET_ACCESS_KEY,
        bucket: str = R2_BUCKET_NAME,
        public_url: str = R2_PUBLIC_URL,
        s3_client=None,
    ):
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")
        self._s3 = s3_client or self._create_client(account_id, access_key_id, secret_access_key)

    @staticmethod
    def _create_client(account_id: str, access_key_id: str, secret_access_key: str):
        import boto3
        from botocore.config import Config as BotoConfig

        return boto3.client(
            "s3",
            endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=BotoConfig(signature_version="s3v4"),
            region_name="auto",
        )

    def public_url_for(self, key: str) -> str:
        return f"{self.public_url}/{key}"

    def _put(self, key: str, data: bytes, content_type: str):
        self._s3.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )

    async def upload_bytes(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """Upload raw bytes; returns the public URL of the object."""
        try:
            await asyncio.to_thread(self._put, key, data, content_type)
        except Exception as e:
            logger.error(f"R2 upload failed for key={key}: {e}")
            raise

        public_url = self.public_url_for(key)
        logger.info(f"Uploaded to R2: {public_url}")
        return public_url

    async def upload_file(self, path: Path, prefix: str) -> str:
        """Upload a local file under ``prefix``; returns its public URL."""
        data = await asyncio.to_thread(Path(path).read_bytes)
        content_type = mimetypes.guess_type(str(path))[0] or "application/octet-stream"
        return await self.upload_bytes(object_key(prefix, Path(path)), data, content_type)
