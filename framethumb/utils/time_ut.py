import math
import re
from typing import Dict, Optional

_UNIT_MS: Dict[str, float] = {}
for _names, _ms in (
    (("ms", "msec", "msecs", "millisecond", "milliseconds"), 1.0),
    (("s", "sec", "secs", "second", "seconds"), 1000.0),
    (("m", "min", "mins", "minute", "minutes"), 60_000.0),
    (("h", "hr", "hrs", "hour", "hours"), 3_600_000.0),
    (("d", "day", "days"), 86_400_000.0),
    (("w", "week", "weeks"), 604_800_000.0),
):
    for _name in _names:
        _UNIT_MS[_name] = _ms

_SEGMENT = re.compile(r"\s*(\d+(?:\.\d+)?|\.\d+)\s*([a-z]*)", re.IGNORECASE)


def parse_time(value: str) -> Optional[float]:
    """Parse a human time expression into seconds.

    Accepts one or more ``<number><unit>`` segments ("0s", "1m30s", "1.5h",
    "2 minutes"). A bare number is read as milliseconds. Returns ``None`` for
    anything unparseable, negative or non-finite.
    """
    text = (value or "").strip()
    if not text:
        return None

    total_ms = 0.0
    pos = 0
    segments = 0
    while pos < len(text):
        m = _SEGMENT.match(text, pos)
        if not m or m.end() == pos:
            return None
        number, unit = m.group(1), m.group(2).lower()
        if unit:
            factor = _UNIT_MS.get(unit)
            if factor is None:
                return None
        else:
            # a unitless number is only allowed alone
            if segments or m.end() != len(text.rstrip()):
                return None
            factor = 1.0
        total_ms += float(number) * factor
        segments += 1
        pos = m.end()
        while pos < len(text) and text[pos].isspace():
            pos += 1

    if not math.isfinite(total_ms) or total_ms < 0:
        return None
    return total_ms / 1000.0


def sec_fmt(s: float) -> str:
    # round once to whole milliseconds so the seconds field never reads 60.000
    total_ms = int(round(s * 1000))
    h, rem = divmod(total_ms, 3_600_000)
    m, rem = divmod(rem, 60_000)
    ss, ms = divmod(rem, 1000)
    return f"{h:02d}:{m:02d}:{ss:02d}.{ms:03d}"
