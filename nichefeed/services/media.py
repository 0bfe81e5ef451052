"""
Mirror product images into S3-compatible object storage (Cloudflare R2).

Hotlinked marketplace image URLs rotate and get rate limited, so the
pipeline stores a copy and publishes the bucket's public URL instead.
Mirroring never fails a candidate: missing configuration returns the
source URLs untouched and a failed item keeps its original URL.
"""
import asyncio
import re
from urllib.parse import urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from curl_cffi import CurlError
from curl_cffi.requests import AsyncSession
from loguru import logger

from nichefeed.services.text import stable_hash

MAX_IMAGE_BYTES = 8 * 1024 * 1024

_CONTENT_TYPE_EXT = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/avif": ".avif",
    "image/svg+xml": ".svg",
}
_EXT_CONTENT_TYPE = {ext: ct for ct, ext in _CONTENT_TYPE_EXT.items()}
_EXT_CONTENT_TYPE[".jpeg"] = "image/jpeg"


def extension_from_content_type(content_type: str | None) -> str:
    value = (content_type or "").lower()
    for ct, ext in _CONTENT_TYPE_EXT.items():
        if ct in value:
            return ext
    return ""


def extension_from_url(url: str) -> str:
    match = re.search(r"\.(jpg|jpeg|png|webp|gif|avif|svg)$", urlparse(url).path.lower())
    return f".{match.group(1)}" if match else ""


def content_type_for(ext: str) -> str:
    return _EXT_CONTENT_TYPE.get(ext.lower(), "application/octet-stream")


def mirror_key(key_prefix: str, url: str, ext: str) -> str:
    return f"uploads/auto/{key_prefix.strip('/')}/{stable_hash(url)}{ext}"


class ImageMirror:
    def __init__(self, bucket: str | None = None, public_base_url: str | None = None, s3_client=None, session: AsyncSession | None = None):
        self.bucket = bucket
        self.public_base_url = (public_base_url or "").rstrip("/")
        self.s3 = s3_client
        self.session = session

    @classmethod
    def from_settings(cls, settings) -> "ImageMirror":
        if not (settings.R2_ACCOUNT_ID and settings.R2_ACCESS_KEY_ID and settings.R2_SECRET_ACCESS_KEY):
            return cls()
        endpoint = settings.R2_ENDPOINT or f"https://{settings.R2_ACCOUNT_ID}.r2.cloudflarestorage.com"
        client = boto3.client(
            "s3",
            endpoint_url=endpoint,
            aws_access_key_id=settings.R2_ACCESS_KEY_ID,
            aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
            region_name="auto",
        )
        return cls(bucket=settings.R2_BUCKET, public_base_url=settings.R2_PUBLIC_BASE_URL, s3_client=client)

    @property
    def enabled(self) -> bool:
        return bool(self.s3 and self.bucket and self.public_base_url)

    async def close(self):
        if self.session:
            await self.session.close()

    async def _download(self, url: str) -> tuple[bytes, str | None] | None:
        if self.session is None:
            self.session = AsyncSession(impersonate="chrome124", timeout=30)
        response = await self.session.get(url)
        if not 200 <= response.status_code < 300:
            logger.warning(f"Image download {url} returned {response.status_code}")
            return None
        body = response.content
        if not body or len(body) > MAX_IMAGE_BYTES:
            logger.warning(f"Image {url} rejected: {len(body or b'')} bytes")
            return None
        return body, response.headers.get("content-type")

    async def _mirror_one(self, url: str, key_prefix: str) -> str | None:
        downloaded = await self._download(url)
        if downloaded is None:
            return None
        body, content_type = downloaded
        ext = extension_from_content_type(content_type) or extension_from_url(url) or ".jpg"
        key = mirror_key(key_prefix, url, ext)
        await asyncio.to_thread(
            self.s3.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=content_type_for(ext),
        )
        return f"{self.public_base_url}/{key}"

    async def mirror(self, urls: list[str], key_prefix: str, max_items: int = 4) -> list[str]:
        unique = list(dict.fromkeys(u for u in urls if u))[:max_items]
        if not self.enabled:
            return unique

        out = []
        for url in unique:
            try:
                mirrored = await self._mirror_one(url, key_prefix)
            except (CurlError, BotoCoreError, ClientError) as e:
                logger.warning(f"Mirror failed for {url}: {e}")
                mirrored = None
            out.append(mirrored or url)
        return out
