"""Cache store and source resolver backends.

Cache store: ``get`` returns ``None`` only when the key is absent; any other
failure raises ``CacheReadError``. ``put`` overwrites and raises
``CacheWriteError``.
Source resolver: ``resolve_read_url`` gives a readable location for ffmpeg,
or raises ``ResolutionError``.
"""

import os
import json
import asyncio
import logging
import mimetypes
import tempfile
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.parse import quote

import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from framethumb.config import Settings, settings as default_settings
from framethumb.errors import (
    CacheReadError,
    CacheWriteError,
    ConfigurationError,
    ResolutionError,
)
from framethumb.schemas import CachedArtifact

log = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


class CacheStore(Protocol):
    async def get(self, key: str) -> Optional[CachedArtifact]:
        ...

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        ...


class SourceResolver(Protocol):
    async def resolve_read_url(self, video_key: str) -> str:
        ...


def _inside(root: Path, key: str) -> Optional[Path]:
    candidate = (root / key).resolve()
    if candidate == root or root not in candidate.parents:
        return None
    return candidate


class FilesystemCacheStore:
    """Artifacts as files under a root directory, content type in a sidecar."""

    META_SUFFIX = ".meta.json"

    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def _path(self, key: str) -> Path:
        path = _inside(self.root, key)
        if path is None:
            raise CacheReadError(f"cache key escapes storage root: {key!r}")
        return path

    async def get(self, key: str) -> Optional[CachedArtifact]:
        return await asyncio.to_thread(self._get_sync, key)

    def _get_sync(self, key: str) -> Optional[CachedArtifact]:
        path = self._path(key)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheReadError(f"cache read failed: {e}") from e

        content_type = None
        meta_path = path.with_name(path.name + self.META_SUFFIX)
        try:
            content_type = json.loads(meta_path.read_text(encoding="utf-8")).get("content_type")
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as e:
            log.warning("[CACHE META ERROR] key=%s error=%s", key, e)
        if not content_type:
            content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return CachedArtifact(data=data, content_type=content_type)

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        await asyncio.to_thread(self._put_sync, key, data, content_type)

    def _put_sync(self, key: str, data: bytes, content_type: str) -> None:
        try:
            path = self._path(key)
        except CacheReadError as e:
            raise CacheWriteError(str(e)) from e
        meta = json.dumps({"content_type": content_type}).encode("utf-8")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._atomic_write(path.with_name(path.name + self.META_SUFFIX), meta)
            self._atomic_write(path, data)
        except OSError as e:
            raise CacheWriteError(f"cache write failed: {e}") from e

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except BaseException:
            try:
                os.remove(tmp)
            except FileNotFoundError:
                pass
            raise


class S3CacheStore:
    def __init__(self, client: Any, bucket: str):
        self.client = client
        self.bucket = bucket

    async def get(self, key: str) -> Optional[CachedArtifact]:
        try:
            return await asyncio.to_thread(self._get_sync, key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in _MISSING_CODES:
                return None
            raise CacheReadError(f"cache read failed: {code or e}") from e
        except BotoCoreError as e:
            raise CacheReadError(f"cache read failed: {e}") from e

    def _get_sync(self, key: str) -> CachedArtifact:
        resp = self.client.get_object(Bucket=self.bucket, Key=key)
        body = resp["Body"]
        try:
            data = body.read()
        finally:
            body.close()
        content_type = resp.get("ContentType") or "application/octet-stream"
        return CachedArtifact(data=data, content_type=content_type)

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            raise CacheWriteError(f"cache write failed: {e}") from e


class LocalSourceResolver:
    """Videos stored as files under ``root``; ffmpeg reads the path directly."""

    def __init__(self, root: str):
        self.root = Path(root).resolve()

    async def resolve_read_url(self, video_key: str) -> str:
        path = _inside(self.root, video_key.lstrip("/"))
        if path is None:
            raise ResolutionError(f"video key escapes video root: {video_key!r}")
        if not await asyncio.to_thread(path.is_file):
            raise ResolutionError(f"video not found: {video_key}")
        return str(path)


class HttpSourceResolver:
    """Videos served by an HTTP origin at ``<base_url>/<key>``."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def resolve_read_url(self, video_key: str) -> str:
        url = f"{self.base_url}/{quote(video_key.lstrip('/'))}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.head(url, follow_redirects=True)
        except httpx.HTTPError as e:
            raise ResolutionError(f"video origin unreachable: {e}") from e
        if r.status_code == 404:
            raise ResolutionError(f"video not found: {video_key}")
        if r.status_code >= 400:
            raise ResolutionError(f"video origin returned {r.status_code} for {video_key}")
        return url


class S3SourceResolver:
    """Pre-signed, time-limited GET URLs for objects in the video bucket."""

    def __init__(self, client: Any, bucket: str, expires_in: int = 3600):
        self.client = client
        self.bucket = bucket
        self.expires_in = expires_in

    async def resolve_read_url(self, video_key: str) -> str:
        try:
            return await asyncio.to_thread(
                self.client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket, "Key": video_key},
                ExpiresIn=self.expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            log.error("[SIGNED URL ERROR] key=%s error=%s", video_key, e)
            raise ResolutionError(f"could not sign URL for {video_key}") from e


def build_s3_client(cfg: Settings) -> Any:
    missing = [
        name for name in ("S3_ENDPOINT", "S3_ACCESS_KEY", "S3_SECRET_KEY")
        if not getattr(cfg, name)
    ]
    if missing:
        raise ConfigurationError(f"missing settings for S3 backend: {', '.join(missing)}")
    return boto3.client(
        "s3",
        endpoint_url=cfg.S3_ENDPOINT,
        region_name=cfg.S3_REGION,
        aws_access_key_id=cfg.S3_ACCESS_KEY,
        aws_secret_access_key=cfg.S3_SECRET_KEY,
        config=BotoConfig(signature_version="s3v4"),
    )


def build_cache_store(cfg: Optional[Settings] = None, client: Any = None) -> CacheStore:
    cfg = cfg or default_settings
    if cfg.CACHE_BACKEND == "fs":
        return FilesystemCacheStore(cfg.STORAGE_ROOT)
    if not cfg.CACHE_BUCKET:
        raise ConfigurationError("FRAMETHUMB_CACHE_BUCKET is required for the s3 cache backend")
    return S3CacheStore(client or build_s3_client(cfg), cfg.CACHE_BUCKET)


def build_source_resolver(cfg: Optional[Settings] = None, client: Any = None) -> SourceResolver:
    cfg = cfg or default_settings
    if cfg.SOURCE_BACKEND == "local":
        return LocalSourceResolver(cfg.VIDEO_ROOT)
    if cfg.SOURCE_BACKEND == "http":
        if not cfg.VIDEO_BASE_URL:
            raise ConfigurationError("FRAMETHUMB_VIDEO_BASE_URL is required for the http source backend")
        return HttpSourceResolver(cfg.VIDEO_BASE_URL, timeout=cfg.HTTP_TIMEOUT)
    if not cfg.VIDEO_BUCKET:
        raise ConfigurationError("FRAMETHUMB_VIDEO_BUCKET is required for the s3 source backend")
    return S3SourceResolver(client or build_s3_client(cfg), cfg.VIDEO_BUCKET, cfg.SIGNED_URL_TTL)
