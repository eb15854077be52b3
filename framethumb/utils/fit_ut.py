"""Fit geometry: map a source frame onto the requested output rectangle.

All math is done in floating point; ``Box.pixels()`` rounds once at the end.
"""

from typing import NamedTuple, Optional, Tuple


class Box(NamedTuple):
    x: float
    y: float
    w: float
    h: float

    def pixels(self) -> Tuple[int, int, int, int]:
        w = max(1, int(round(self.w)))
        h = max(1, int(round(self.h)))
        return int(round(self.x)), int(round(self.y)), w, h


class FitPlan(NamedTuple):
    fit: str
    source: Tuple[int, int]
    crop: Box          # region of the source frame that is used
    dest: Box          # where that region lands on the output canvas
    canvas: Tuple[int, int]
    background: Optional[str]  # margin colour; None leaves it unfilled

    @property
    def crops(self) -> bool:
        sw, sh = self.source
        return self.crop_pixels() != (0, 0, sw, sh)

    def crop_pixels(self) -> Tuple[int, int, int, int]:
        sw, sh = self.source
        x, y, w, h = self.crop.pixels()
        w, h = min(w, sw), min(h, sh)
        return min(x, sw - w), min(y, sh - h), w, h

    @property
    def pads(self) -> bool:
        cw, ch = self.canvas
        return self.dest_pixels() != (0, 0, cw, ch)

    def dest_pixels(self) -> Tuple[int, int, int, int]:
        # centre on whole pixels so both margins differ by at most one
        cw, ch = self.canvas
        _, _, w, h = self.dest.pixels()
        w, h = min(w, cw), min(h, ch)
        return (cw - w) // 2, (ch - h) // 2, w, h


def plan_fit(sw: int, sh: int, dw: int, dh: int, fit: str) -> FitPlan:
    if sw <= 0 or sh <= 0:
        raise ValueError(f"invalid source size {sw}x{sh}")
    if dw <= 0 or dh <= 0:
        raise ValueError(f"invalid target size {dw}x{dh}")

    full_source = Box(0.0, 0.0, float(sw), float(sh))
    full_canvas = Box(0.0, 0.0, float(dw), float(dh))

    if fit == "crop":
        source_aspect = sw / sh
        target_aspect = dw / dh
        if target_aspect > source_aspect:
            # output is wider: keep full width, take a centred horizontal band
            cw, ch = float(sw), sw / target_aspect
        else:
            cw, ch = sh * target_aspect, float(sh)
        crop = Box((sw - cw) / 2, (sh - ch) / 2, cw, ch)
        return FitPlan(fit, (sw, sh), crop, full_canvas, (dw, dh), None)

    if fit in ("clip", "fill"):
        factor = min(dw / sw, dh / sh)
        ow, oh = sw * factor, sh * factor
        dest = Box((dw - ow) / 2, (dh - oh) / 2, ow, oh)
        background = "black" if fit == "fill" else None
        return FitPlan(fit, (sw, sh), full_source, dest, (dw, dh), background)

    if fit == "scale":
        return FitPlan(fit, (sw, sh), full_source, full_canvas, (dw, dh), None)

    raise ValueError(f"unknown fit mode {fit!r}")


def build_vf_chain(plan: FitPlan) -> str:
    """ffmpeg filter chain implementing a plan."""
    dw, dh = plan.canvas
    filters = []
    if plan.crops:
        x, y, w, h = plan.crop_pixels()
        filters.append(f"crop={w}:{h}:{x}:{y}")
    if plan.pads:
        x, y, w, h = plan.dest_pixels()
        filters.append(f"scale={w}:{h}")
        pad = f"pad={dw}:{dh}:{x}:{y}"
        if plan.background:
            pad += f":color={plan.background}"
        filters.append(pad)
    else:
        filters.append(f"scale={dw}:{dh}")
    filters.append("setsar=1")
    return ",".join(filters)
