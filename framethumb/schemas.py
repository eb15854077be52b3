from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

FitMode = Literal["crop", "clip", "scale", "fill"]
Encoding = Literal["jpeg", "avif"]
TaskStatus = Literal["pending", "running", "succeeded", "failed"]

FIT_MODES = ("crop", "clip", "scale", "fill")

CONTENT_TYPES: Dict[str, str] = {
    "jpeg": "image/jpeg",
    "avif": "image/avif",
}

EXTENSIONS: Dict[str, str] = {
    "jpeg": "jpg",
    "avif": "avif",
}


class ThumbnailRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    video_key: str = Field(min_length=1)
    time_raw: str
    time_offset: float = Field(ge=0.0)  # seconds
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    fit: FitMode
    encoding: Encoding

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES[self.encoding]


class CachedArtifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: bytes
    content_type: str


class GenerationResult(BaseModel):
    """Outcome of one generation task: either bytes + content type, or a reason."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    data: Optional[bytes] = None
    content_type: Optional[str] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _check_variant(self) -> "GenerationResult":
        if self.ok:
            if not self.data or not self.content_type or self.reason is not None:
                raise ValueError("success requires non-empty data and a content type")
        elif self.data is not None or not self.reason:
            raise ValueError("failure carries a reason and no data")
        return self

    @classmethod
    def success(cls, data: bytes, content_type: str) -> "GenerationResult":
        return cls(ok=True, data=data, content_type=content_type)

    @classmethod
    def failure(cls, reason: str) -> "GenerationResult":
        return cls(ok=False, reason=reason)


class RenderJob(BaseModel):
    """Everything one generation needs. ``source_url`` is short-lived and never stored."""

    model_config = ConfigDict(frozen=True)

    source_url: str = Field(repr=False)
    time_offset: float = Field(ge=0.0)
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    fit: FitMode
    encoding: Encoding

    @classmethod
    def for_request(cls, req: ThumbnailRequest, source_url: str) -> "RenderJob":
        return cls(
            source_url=source_url,
            time_offset=req.time_offset,
            width=req.width,
            height=req.height,
            fit=req.fit,
            encoding=req.encoding,
        )


class SourceInfo(BaseModel):
    # display size, after the container rotation ffmpeg applies on decode
    width: int
    height: int
    duration: Optional[float] = None
    frame_rate: Optional[float] = None
    rotation: int = 0


class SchedulerStats(BaseModel):
    limit: int
    queued: int
    running: int
    peak_running: int
    completed: int
    failed: int
