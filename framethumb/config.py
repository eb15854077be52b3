from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # General
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    LOG_LEVEL: str = "INFO"
    MAX_CONCURRENCY: int = 5  # concurrent generation tasks

    # Request defaults
    DEFAULT_TIME: str = "0s"
    DEFAULT_WIDTH: int = 1280
    DEFAULT_HEIGHT: int = 720
    DEFAULT_FIT: str = "crop"
    MAX_DIMENSION: int = 7680
    AVIF_ENABLED: bool = True

    # Response
    CACHE_CONTROL: str = "public, max-age=31536000"

    # Cache store
    CACHE_BACKEND: Literal["fs", "s3"] = "fs"
    CACHE_PREFIX: str = "thumbs/"
    STORAGE_ROOT: str = "/var/lib/framethumb/cache"

    # Source videos
    SOURCE_BACKEND: Literal["local", "http", "s3"] = "local"
    VIDEO_ROOT: str = "/var/lib/framethumb/videos"
    VIDEO_BASE_URL: Optional[str] = None  # http backend: <base>/<key>
    HTTP_TIMEOUT: float = 10.0
    SIGNED_URL_TTL: int = 3600

    # S3-compatible object store (R2, MinIO, AWS)
    S3_ENDPOINT: Optional[str] = None
    S3_REGION: str = "us-east-1"
    S3_ACCESS_KEY: Optional[str] = None
    S3_SECRET_KEY: Optional[str] = None
    VIDEO_BUCKET: Optional[str] = None
    CACHE_BUCKET: Optional[str] = None

    # Rendering
    RENDER_BACKEND: Literal["ffmpeg", "pillow"] = "ffmpeg"
    FFMPEG_BIN: str = "ffmpeg"
    FFPROBE_BIN: str = "ffprobe"
    JPEG_QSCALE: int = 3     # ffmpeg mjpeg -q:v
    JPEG_QUALITY: int = 80   # Pillow quality
    AVIF_CRF: int = 30

    # Share one generation between identical concurrent requests
    COALESCE_INFLIGHT: bool = False

    model_config = SettingsConfigDict(
        env_prefix="FRAMETHUMB_",
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
