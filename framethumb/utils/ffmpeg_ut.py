import os
import asyncio
import logging
import tempfile
from contextlib import contextmanager
from fractions import Fraction
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from framethumb.errors import GenerationError
from framethumb.schemas import SourceInfo
from framethumb.utils.time_ut import sec_fmt

log = logging.getLogger(__name__)

STDERR_TAIL = 500


def trim_tail(text: str, limit: int = STDERR_TAIL) -> str:
    text = text.strip()
    return text if len(text) <= limit else "..." + text[-limit:]


def redact_cmd(cmd: Sequence[str]) -> str:
    """Printable command line with the input URL hidden (it may be signed)."""
    out: List[str] = []
    hide_next = False
    for arg in cmd:
        if hide_next:
            out.append("<source>")
            hide_next = False
            continue
        out.append(arg)
        hide_next = arg == "-i"
    return " ".join(out)


def input_sources(cmd: Sequence[str]) -> List[str]:
    return [cmd[i + 1] for i, arg in enumerate(cmd[:-1]) if arg == "-i"]


def redact_text(text: str, sources: Iterable[str]) -> str:
    """Hide source URLs that ffmpeg echoes back in its diagnostics."""
    for src in sources:
        if not src:
            continue
        text = text.replace(src, "<source>")
        # ffmpeg sometimes prints the query string on its own
        _, _, query = src.partition("?")
        if query:
            text = text.replace(query, "<redacted>")
    return text


async def run_cmd(cmd: Sequence[str]) -> Tuple[int, bytes, bytes]:
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError as e:
        raise GenerationError(f"{cmd[0]} not found") from e
    stdout, stderr = await proc.communicate()
    return proc.returncode, stdout, stderr


def _frame_rate(value: str) -> Optional[float]:
    # "30000/1001"; "0/0" when the container does not say
    try:
        rate = float(Fraction(value))
    except (ValueError, ZeroDivisionError):
        return None
    return rate if rate > 0 else None


def _rotation(fields: Dict[str, str]) -> int:
    # display matrix side data on current files, a rotate tag on older ones
    for name in ("rotation", "TAG:rotate"):
        try:
            return int(round(float(fields[name]))) % 360
        except (KeyError, ValueError):
            continue
    return 0


async def probe_source(src: str, ffprobe_bin: str = "ffprobe") -> SourceInfo:
    """Display dimensions, frame rate and duration of the first video stream.

    ffmpeg rotates frames by the container's display matrix before the filter
    chain runs, so width and height are swapped for quarter-turn rotations.
    """
    cmd = [
        ffprobe_bin,
        "-v", "error",
        "-select_streams", "v:0",
        "-show_entries",
        "stream=width,height,r_frame_rate:stream_tags=rotate:stream_side_data=rotation:format=duration",
        "-of", "default=noprint_wrappers=1",
        src,
    ]
    code, stdout, stderr = await run_cmd(cmd)
    if code != 0:
        err_txt = redact_text(stderr.decode("utf-8", "ignore"), [src])
        log.error("[FFPROBE ERROR] %s", trim_tail(err_txt, 300))
        raise GenerationError("ffprobe failed", diagnostic=trim_tail(err_txt))

    fields: Dict[str, str] = {}
    for line in stdout.decode("utf-8", "ignore").splitlines():
        if "=" in line:
            name, value = line.split("=", 1)
            fields.setdefault(name.strip(), value.strip())

    try:
        width, height = int(fields["width"]), int(fields["height"])
    except (KeyError, ValueError) as e:
        raise GenerationError("source has no video stream") from e

    rotation = _rotation(fields)
    if rotation in (90, 270):
        width, height = height, width

    duration: Optional[float]
    try:
        duration = float(fields.get("duration", ""))
    except ValueError:
        # live streams and some containers report N/A
        duration = None

    frame_rate = _frame_rate(fields.get("r_frame_rate", ""))

    log.info(
        "[SOURCE OK] dims=%dx%d rotation=%d fps=%s duration=%s",
        width, height, rotation, frame_rate, duration,
    )
    return SourceInfo(
        width=width,
        height=height,
        duration=duration,
        frame_rate=frame_rate,
        rotation=rotation,
    )


def clamp_offset(offset: float, duration: Optional[float], frame_rate: Optional[float] = None) -> float:
    """Seek target actually used for a requested offset.

    An offset past the start of the last frame falls back to the midpoint,
    since seeking there decodes nothing. Without a frame rate the cut-off is
    the duration itself. With an unknown duration the requested offset is
    used unchanged, and offset 0 is never moved.
    """
    if duration is None or duration <= 0 or offset <= 0:
        return offset
    if offset >= duration:
        return duration / 2
    if frame_rate and offset > duration - 1.0 / frame_rate:
        return duration / 2
    return offset


def seek_args(offset: float, src: str) -> List[str]:
    # input-side seek: fast keyframe seek, then decode to the exact frame
    return ["-ss", sec_fmt(offset), "-i", src, "-frames:v", "1"]


async def run_ffmpeg(cmd: Sequence[str]) -> bytes:
    """Run ffmpeg and return stdout; raise ``GenerationError`` on failure."""
    log.info("[FFMPEG CMD] %s", redact_cmd(cmd))
    code, stdout, stderr = await run_cmd(cmd)
    if code != 0:
        err_txt = redact_text(stderr.decode("utf-8", "ignore"), input_sources(cmd))
        log.error("[FFMPEG STDERR] %s", trim_tail(err_txt))
        raise GenerationError(f"ffmpeg exited with code {code}", diagnostic=trim_tail(err_txt))
    return stdout


@contextmanager
def scoped_tempfile(suffix: str) -> Iterator[str]:
    """Path of a fresh temporary file, removed on every exit path."""
    fd, path = tempfile.mkstemp(prefix="thumbnail-", suffix=suffix)
    os.close(fd)
    try:
        yield path
    finally:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
