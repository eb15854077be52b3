"""Frame extraction and fit rendering.

Two interchangeable renderers implement ``FrameRenderer``; exactly one is
built from settings at startup:

* ``FfmpegRenderer`` lets ffmpeg seek, fit (crop/scale/pad filters) and
  encode in a single subprocess.
* ``PillowRenderer`` has ffmpeg decode one lossless PNG frame and does the
  fit and encoding with Pillow on a canvas.

Both follow the same policies: seeks past the last frame go to the midpoint
(``clamp_offset``), ``fill`` margins are opaque black and ``clip`` margins are
left unfilled, which comes out black in formats without alpha.
"""

import io
import asyncio
import logging
from typing import Optional, Protocol

from PIL import Image

from framethumb.config import Settings, settings as default_settings
from framethumb.errors import ConfigurationError, GenerationError
from framethumb.job_manager import GenerationTask
from framethumb.schemas import CONTENT_TYPES, GenerationResult, RenderJob, SourceInfo
from framethumb.utils.ffmpeg_ut import (
    clamp_offset,
    probe_source,
    run_ffmpeg,
    scoped_tempfile,
    seek_args,
)
from framethumb.utils.fit_ut import FitPlan, build_vf_chain, plan_fit

log = logging.getLogger(__name__)


class FrameRenderer(Protocol):
    async def render(self, job: RenderJob) -> GenerationResult:
        ...


def _seek_target(job: RenderJob, info: SourceInfo) -> float:
    offset = clamp_offset(job.time_offset, info.duration, info.frame_rate)
    if offset != job.time_offset:
        log.warning(
            "[TIME CLAMP] requested=%.3f duration=%s using=%.3f",
            job.time_offset, info.duration, offset,
        )
    return offset


def _checked(data: bytes, encoding: str) -> GenerationResult:
    if not data:
        raise GenerationError("No data received from ffmpeg")
    return GenerationResult.success(data, CONTENT_TYPES[encoding])


class FfmpegRenderer:
    def __init__(
        self,
        ffmpeg_bin: str = "ffmpeg",
        ffprobe_bin: str = "ffprobe",
        jpeg_qscale: int = 3,
        avif_crf: int = 30,
    ):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.jpeg_qscale = jpeg_qscale
        self.avif_crf = avif_crf

    async def render(self, job: RenderJob) -> GenerationResult:
        info = await probe_source(job.source_url, self.ffprobe_bin)
        offset = _seek_target(job, info)
        # display size: ffmpeg applies the rotation before -filter:v
        plan = plan_fit(info.width, info.height, job.width, job.height, job.fit)

        cmd = [
            self.ffmpeg_bin, "-hide_banner", "-loglevel", "error", "-y",
            *seek_args(offset, job.source_url),
            "-filter:v", build_vf_chain(plan),
        ]

        if job.encoding == "avif":
            # the avif muxer needs a seekable output, so no pipe here
            with scoped_tempfile(".avif") as out_path:
                cmd += [
                    "-c:v", "libaom-av1",
                    "-crf", str(self.avif_crf),
                    "-cpu-used", "6",
                    "-pix_fmt", "yuv420p",
                    "-f", "avif",
                    out_path,
                ]
                await run_ffmpeg(cmd)
                with open(out_path, "rb") as f:
                    data = f.read()
        else:
            cmd += [
                "-f", "image2pipe",
                "-q:v", str(self.jpeg_qscale),
                "-vcodec", "mjpeg",
                "-",
            ]
            data = await run_ffmpeg(cmd)

        return _checked(data, job.encoding)


def apply_plan(frame: Image.Image, plan: FitPlan) -> Image.Image:
    """Draw the source frame onto the output canvas according to ``plan``."""
    cw, ch = plan.canvas
    x, y, w, h = plan.crop_pixels()
    region = frame.crop((x, y, x + w, y + h)) if plan.crops else frame

    if not plan.pads:
        return region.convert("RGB").resize((cw, ch), Image.Resampling.LANCZOS)

    dx, dy, dw, dh = plan.dest_pixels()
    fitted = region.convert("RGBA").resize((dw, dh), Image.Resampling.LANCZOS)
    if plan.background:
        canvas = Image.new("RGBA", (cw, ch), plan.background)
    else:
        canvas = Image.new("RGBA", (cw, ch), (0, 0, 0, 0))
    canvas.paste(fitted, (dx, dy))
    return canvas


def encode_image(image: Image.Image, encoding: str, quality: int = 80) -> bytes:
    buf = io.BytesIO()
    if encoding == "avif":
        Image.init()
        if "AVIF" not in Image.SAVE:
            raise GenerationError("AVIF encoding is not supported by this Pillow build")
        image.save(buf, format="AVIF", quality=quality)
    else:
        if image.mode in ("RGBA", "LA", "P"):
            # no alpha in JPEG: unfilled margins flatten to black
            base = Image.new("RGBA", image.size, (0, 0, 0, 255))
            image = Image.alpha_composite(base, image.convert("RGBA"))
        image.convert("RGB").save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue()


class PillowRenderer:
    def __init__(self, ffmpeg_bin: str = "ffmpeg", ffprobe_bin: str = "ffprobe", quality: int = 80):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.quality = quality

    async def render(self, job: RenderJob) -> GenerationResult:
        info = await probe_source(job.source_url, self.ffprobe_bin)
        offset = _seek_target(job, info)
        cmd = [
            self.ffmpeg_bin, "-hide_banner", "-loglevel", "error",
            *seek_args(offset, job.source_url),
            "-f", "image2pipe",
            "-vcodec", "png",
            "-",
        ]
        raw = await run_ffmpeg(cmd)
        if not raw:
            raise GenerationError("No data received from ffmpeg")
        data = await asyncio.to_thread(self._compose, raw, job)
        return _checked(data, job.encoding)

    def _compose(self, raw: bytes, job: RenderJob) -> bytes:
        try:
            frame = Image.open(io.BytesIO(raw))
            frame.load()
        except OSError as e:
            raise GenerationError("decoded frame is not a readable image") from e
        plan = plan_fit(frame.width, frame.height, job.width, job.height, job.fit)
        return encode_image(apply_plan(frame, plan), job.encoding, self.quality)


def build_renderer(cfg: Optional[Settings] = None) -> FrameRenderer:
    cfg = cfg or default_settings
    if cfg.RENDER_BACKEND == "ffmpeg":
        return FfmpegRenderer(
            ffmpeg_bin=cfg.FFMPEG_BIN,
            ffprobe_bin=cfg.FFPROBE_BIN,
            jpeg_qscale=cfg.JPEG_QSCALE,
            avif_crf=cfg.AVIF_CRF,
        )
    if cfg.RENDER_BACKEND == "pillow":
        return PillowRenderer(
            ffmpeg_bin=cfg.FFMPEG_BIN,
            ffprobe_bin=cfg.FFPROBE_BIN,
            quality=cfg.JPEG_QUALITY,
        )
    raise ConfigurationError(f"unknown render backend {cfg.RENDER_BACKEND!r}")


def make_task(renderer: FrameRenderer, job: RenderJob, label: str = "") -> GenerationTask:
    async def run() -> GenerationResult:
        return await renderer.render(job)

    return GenerationTask(run=run, label=label or job.fit)
