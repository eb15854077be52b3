import hashlib
import json

from framethumb.schemas import EXTENSIONS, ThumbnailRequest

# bump when the rendering pipeline changes output for the same parameters
KEY_VERSION = 1


def derive_key(req: ThumbnailRequest, prefix: str = "") -> str:
    """Stable cache key for every parameter that affects the output pixels.

    The raw time string is hashed, not the parsed offset, so "60s" and "1m"
    are separate cache entries.
    """
    fields = [
        KEY_VERSION,
        req.video_key,
        req.time_raw,
        req.width,
        req.height,
        req.fit,
        req.encoding,
    ]
    canonical = json.dumps(fields, ensure_ascii=False, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{prefix}{digest}.{EXTENSIONS[req.encoding]}"
