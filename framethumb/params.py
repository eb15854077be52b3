"""Turn raw query parameters into a validated ``ThumbnailRequest``."""

import re
from typing import Mapping, Optional

from framethumb.config import Settings, settings as default_settings
from framethumb.errors import ValidationError
from framethumb.schemas import FIT_MODES, ThumbnailRequest
from framethumb.utils.time_ut import parse_time

_DIGITS = re.compile(r"^\d+$")


def negotiate_encoding(accept: Optional[str], avif_enabled: bool = True) -> str:
    if avif_enabled and accept and "image/avif" in accept.lower():
        return "avif"
    return "jpeg"


def _dimension(raw: str, name: str, limit: int) -> int:
    text = raw.strip()
    if not _DIGITS.match(text):
        raise ValidationError(ValidationError.BAD_DIMENSIONS, f"Invalid {name} parameter: {raw!r}")
    value = int(text)
    if value <= 0:
        raise ValidationError(ValidationError.BAD_DIMENSIONS, f"Invalid {name} parameter: must be a positive integer")
    if value > limit:
        raise ValidationError(
            ValidationError.BAD_DIMENSIONS,
            f"Invalid {name} parameter: {value} exceeds this service's limit of {limit} pixels",
        )
    return value


def normalize(
    raw: Mapping[str, Optional[str]],
    accept: Optional[str] = None,
    cfg: Optional[Settings] = None,
) -> ThumbnailRequest:
    cfg = cfg or default_settings

    video_key = (raw.get("key") or "").strip()
    if not video_key:
        raise ValidationError(
            ValidationError.MISSING_KEY,
            "Please add a ?key=videos/video.mp4 parameter",
        )

    time_raw = raw.get("time") or cfg.DEFAULT_TIME
    offset = parse_time(time_raw)
    if offset is None:
        raise ValidationError(ValidationError.BAD_TIME, f"Invalid time parameter: {time_raw!r}")

    width = _dimension(raw.get("width") or str(cfg.DEFAULT_WIDTH), "width", cfg.MAX_DIMENSION)
    height = _dimension(raw.get("height") or str(cfg.DEFAULT_HEIGHT), "height", cfg.MAX_DIMENSION)

    fit = raw.get("fit") or cfg.DEFAULT_FIT
    if fit not in FIT_MODES:
        raise ValidationError(
            ValidationError.BAD_FIT,
            f"Invalid fit parameter. Must be one of: {', '.join(FIT_MODES)}",
        )

    return ThumbnailRequest(
        video_key=video_key,
        time_raw=time_raw,
        time_offset=offset,
        width=width,
        height=height,
        fit=fit,
        encoding=negotiate_encoding(accept, cfg.AVIF_ENABLED),
    )
