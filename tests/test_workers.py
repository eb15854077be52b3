import io
import os

import pytest
from PIL import Image

from framethumb.config import Settings
from framethumb.errors import ConfigurationError, GenerationError
from framethumb.job_manager import GenerationTask
from framethumb.schemas import RenderJob
from framethumb.utils import ffmpeg_ut
from framethumb.utils.fit_ut import plan_fit
from framethumb.workers import (
    FfmpegRenderer,
    PillowRenderer,
    apply_plan,
    build_renderer,
    encode_image,
    make_task,
)

PROBE_OK = b"width=1920\nheight=1080\nduration=120.0\n"


class ScriptedFfmpeg:
    """Stands in for ``run_cmd``: ffprobe gets ``probe``, ffmpeg gets ``output``."""

    def __init__(self, probe=PROBE_OK, output=b"\xff\xd8jpeg", code=0, stderr=b"", write_file=True):
        self.probe = probe
        self.output = output
        self.code = code
        self.stderr = stderr
        self.write_file = write_file
        self.calls = []

    async def __call__(self, cmd):
        cmd = list(cmd)
        self.calls.append(cmd)
        if cmd[0].endswith("ffprobe"):
            return 0, self.probe, b""
        if self.code != 0:
            return self.code, b"", self.stderr
        if cmd[-1] != "-":
            # file output (avif)
            if self.write_file:
                with open(cmd[-1], "wb") as f:
                    f.write(self.output)
            return 0, b"", b""
        return 0, self.output, b""

    @property
    def ffmpeg_cmd(self):
        return next(c for c in self.calls if c[0].endswith("ffmpeg"))


def job(**overrides):
    fields = dict(
        source_url="https://videos.example.com/a.mp4?sig=1",
        time_offset=0.0,
        width=400,
        height=300,
        fit="crop",
        encoding="jpeg",
    )
    fields.update(overrides)
    return RenderJob(**fields)


def png_frame(size=(1920, 1080), color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.mark.asyncio
async def test_ffmpeg_jpeg_pipeline(monkeypatch):
    ff = ScriptedFfmpeg()
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ff)
    result = await FfmpegRenderer().render(job())
    assert result.ok
    assert result.data == b"\xff\xd8jpeg"
    assert result.content_type == "image/jpeg"
    cmd = ff.ffmpeg_cmd
    assert cmd[cmd.index("-ss") + 1] == "00:00:00.000"
    assert cmd[cmd.index("-frames:v") + 1] == "1"
    assert cmd[cmd.index("-filter:v") + 1] == "crop=1440:1080:240:0,scale=400:300,setsar=1"
    assert cmd[cmd.index("-vcodec") + 1] == "mjpeg"
    assert cmd[cmd.index("-q:v") + 1] == "3"
    assert cmd[-1] == "-"


@pytest.mark.asyncio
async def test_ffmpeg_out_of_range_time_clamps_to_midpoint(monkeypatch):
    ff = ScriptedFfmpeg()
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ff)
    await FfmpegRenderer().render(job(time_offset=500.0))
    cmd = ff.ffmpeg_cmd
    assert cmd[cmd.index("-ss") + 1] == "00:01:00.000"


@pytest.mark.asyncio
async def test_ffmpeg_in_range_time_is_kept(monkeypatch):
    ff = ScriptedFfmpeg()
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ff)
    await FfmpegRenderer().render(job(time_offset=90.0))
    cmd = ff.ffmpeg_cmd
    assert cmd[cmd.index("-ss") + 1] == "00:01:30.000"


PROBE_PORTRAIT = b"width=1920\nheight=1080\nr_frame_rate=30/1\nrotation=-90\nduration=10.0\n"


@pytest.mark.asyncio
async def test_ffmpeg_rotated_source_is_planned_upright(monkeypatch):
    ff = ScriptedFfmpeg(probe=PROBE_PORTRAIT)
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ff)
    await FfmpegRenderer().render(job())
    cmd = ff.ffmpeg_cmd
    # the decoded frame is 1080x1920, so crop takes a centred horizontal band
    assert cmd[cmd.index("-filter:v") + 1] == "crop=1080:810:0:555,scale=400:300,setsar=1"


@pytest.mark.asyncio
async def test_ffmpeg_rotated_source_fill_pillarboxes(monkeypatch):
    ff = ScriptedFfmpeg(probe=PROBE_PORTRAIT)
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ff)
    await FfmpegRenderer().render(job(fit="fill", width=400, height=400))
    cmd = ff.ffmpeg_cmd
    assert cmd[cmd.index("-filter:v") + 1] == "scale=225:400,pad=400:400:87:0:color=black,setsar=1"


@pytest.mark.asyncio
async def test_ffmpeg_time_after_last_frame_clamps_to_midpoint(monkeypatch):
    ff = ScriptedFfmpeg(probe=b"width=1920\nheight=1080\nr_frame_rate=25/1\nduration=3.0\n")
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ff)
    await FfmpegRenderer().render(job(time_offset=2.99))
    cmd = ff.ffmpeg_cmd
    assert cmd[cmd.index("-ss") + 1] == "00:00:01.500"


@pytest.mark.asyncio
async def test_ffmpeg_midpoint_near_minute_boundary(monkeypatch):
    ff = ScriptedFfmpeg(probe=b"width=1920\nheight=1080\nduration=119.9993\n")
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ff)
    await FfmpegRenderer().render(job(time_offset=500.0))
    cmd = ff.ffmpeg_cmd
    assert cmd[cmd.index("-ss") + 1] == "00:01:00.000"


@pytest.mark.asyncio
async def test_ffmpeg_fill_filter(monkeypatch):
    ff = ScriptedFfmpeg()
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ff)
    await FfmpegRenderer().render(job(fit="fill"))
    cmd = ff.ffmpeg_cmd
    assert cmd[cmd.index("-filter:v") + 1] == "scale=400:225,pad=400:300:0:37:color=black,setsar=1"


@pytest.mark.asyncio
async def test_ffmpeg_empty_output_is_failure(monkeypatch):
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ScriptedFfmpeg(output=b""))
    with pytest.raises(GenerationError):
        await FfmpegRenderer().render(job())


@pytest.mark.asyncio
async def test_ffmpeg_nonzero_exit(monkeypatch):
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ScriptedFfmpeg(code=1, stderr=b"Server returned 403"))
    with pytest.raises(GenerationError) as exc:
        await FfmpegRenderer().render(job())
    assert "403" in exc.value.diagnostic


@pytest.mark.asyncio
async def test_ffmpeg_failure_diagnostic_hides_signed_url(monkeypatch, caplog):
    src = "https://videos.example.com/a.mp4?X-Amz-Signature=SECRETSIG"
    stderr = f"Error opening input file {src}.".encode()
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ScriptedFfmpeg(code=1, stderr=stderr))
    with caplog.at_level("DEBUG"):
        with pytest.raises(GenerationError) as exc:
            await FfmpegRenderer().render(job(source_url=src))
    assert "SECRETSIG" not in exc.value.diagnostic
    assert "SECRETSIG" not in caplog.text


@pytest.mark.asyncio
async def test_ffmpeg_avif_uses_temp_file_and_cleans_up(monkeypatch):
    ff = ScriptedFfmpeg(output=b"\x00\x00\x00\x1cftypavif")
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ff)
    result = await FfmpegRenderer().render(job(encoding="avif"))
    assert result.content_type == "image/avif"
    assert result.data.startswith(b"\x00\x00\x00\x1cftyp")
    cmd = ff.ffmpeg_cmd
    assert cmd[cmd.index("-c:v") + 1] == "libaom-av1"
    assert cmd[cmd.index("-f") + 1] == "avif"
    assert cmd[-1].endswith(".avif")
    assert not os.path.exists(cmd[-1])


@pytest.mark.asyncio
async def test_ffmpeg_avif_temp_file_removed_on_failure(monkeypatch):
    ff = ScriptedFfmpeg(code=1, stderr=b"Unknown encoder 'libaom-av1'")
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ff)
    with pytest.raises(GenerationError):
        await FfmpegRenderer().render(job(encoding="avif"))
    assert not os.path.exists(ff.ffmpeg_cmd[-1])


@pytest.mark.asyncio
async def test_ffmpeg_avif_empty_file_is_failure(monkeypatch):
    ff = ScriptedFfmpeg(write_file=False)
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ff)
    with pytest.raises(GenerationError):
        await FfmpegRenderer().render(job(encoding="avif"))
    assert not os.path.exists(ff.ffmpeg_cmd[-1])


def test_apply_plan_crop_and_scale_sizes():
    frame = Image.new("RGB", (1920, 1080), (10, 20, 30))
    for fit in ("crop", "scale", "clip", "fill"):
        out = apply_plan(frame, plan_fit(1920, 1080, 400, 300, fit))
        assert out.size == (400, 300)


def test_apply_plan_fill_margins_are_opaque_black():
    frame = Image.new("RGB", (1920, 1080), (255, 255, 255))
    out = apply_plan(frame, plan_fit(1920, 1080, 400, 300, "fill"))
    assert out.getpixel((200, 5)) == (0, 0, 0, 255)
    assert out.getpixel((200, 150))[:3] == (255, 255, 255)


def test_apply_plan_clip_margins_are_unfilled():
    frame = Image.new("RGB", (1920, 1080), (255, 255, 255))
    out = apply_plan(frame, plan_fit(1920, 1080, 400, 300, "clip"))
    assert out.getpixel((200, 5))[3] == 0


def test_apply_plan_crop_takes_centre():
    frame = Image.new("RGB", (1920, 1080), (255, 0, 0))
    # paint the cropped-away side bands blue
    frame.paste((0, 0, 255), (0, 0, 240, 1080))
    frame.paste((0, 0, 255), (1680, 0, 1920, 1080))
    out = apply_plan(frame, plan_fit(1920, 1080, 400, 300, "crop"))
    for x in (0, 399):
        r, g, b = out.getpixel((x, 150))
        assert r > 240 and b < 16


def test_encode_jpeg_flattens_clip_margins_to_black():
    frame = Image.new("RGB", (1920, 1080), (255, 255, 255))
    data = encode_image(apply_plan(frame, plan_fit(1920, 1080, 400, 300, "clip")), "jpeg")
    img = Image.open(io.BytesIO(data))
    assert img.format == "JPEG"
    assert img.size == (400, 300)
    r, g, b = img.convert("RGB").getpixel((200, 5))
    assert max(r, g, b) < 16


@pytest.mark.asyncio
async def test_pillow_renderer(monkeypatch):
    ff = ScriptedFfmpeg(output=png_frame())
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ff)
    result = await PillowRenderer().render(job(fit="fill", time_offset=999.0))
    assert result.content_type == "image/jpeg"
    assert Image.open(io.BytesIO(result.data)).size == (400, 300)
    cmd = ff.ffmpeg_cmd
    assert cmd[cmd.index("-vcodec") + 1] == "png"
    assert cmd[cmd.index("-ss") + 1] == "00:01:00.000"


@pytest.mark.asyncio
async def test_pillow_renderer_rejects_garbage_frame(monkeypatch):
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ScriptedFfmpeg(output=b"not an image"))
    with pytest.raises(GenerationError):
        await PillowRenderer().render(job())


@pytest.mark.asyncio
async def test_pillow_renderer_empty_decoder_output(monkeypatch):
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ScriptedFfmpeg(output=b""))
    with pytest.raises(GenerationError):
        await PillowRenderer().render(job())


def test_build_renderer_selects_backend():
    assert isinstance(build_renderer(Settings(RENDER_BACKEND="ffmpeg")), FfmpegRenderer)
    renderer = build_renderer(Settings(RENDER_BACKEND="pillow", JPEG_QUALITY=70))
    assert isinstance(renderer, PillowRenderer)
    assert renderer.quality == 70


def test_build_renderer_unknown_backend():
    cfg = Settings().model_copy(update={"RENDER_BACKEND": "chrome"})
    with pytest.raises(ConfigurationError):
        build_renderer(cfg)


@pytest.mark.asyncio
async def test_make_task_wraps_renderer(monkeypatch):
    monkeypatch.setattr(ffmpeg_ut, "run_cmd", ScriptedFfmpeg())
    task = make_task(FfmpegRenderer(), job(), label="k")
    assert isinstance(task, GenerationTask)
    assert task.status == "pending"
    result = await task.run()
    assert result.ok
