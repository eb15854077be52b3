import logging

from fastapi import BackgroundTasks
from fastapi.responses import PlainTextResponse, Response

from framethumb.errors import CacheWriteError, ThumbnailError
from framethumb.service import ThumbnailOutcome
from framethumb.storage import CacheStore

log = logging.getLogger(__name__)


class ResponsePublisher:
    def __init__(self, cache: CacheStore, cache_control: str, negotiated: bool = True):
        self.cache = cache
        self.cache_control = cache_control
        # output format depends on the Accept header
        self.negotiated = negotiated

    def publish(self, outcome: ThumbnailOutcome, background: BackgroundTasks) -> Response:
        if not outcome.cached:
            background.add_task(self.store, outcome.key, outcome.data, outcome.content_type)
        headers = {"cache-control": self.cache_control}
        if self.negotiated:
            headers["vary"] = "Accept"
        return Response(content=outcome.data, media_type=outcome.content_type, headers=headers)

    async def store(self, key: str, data: bytes, content_type: str) -> None:
        """Best-effort write-back; the response has already been computed."""
        try:
            await self.cache.put(key, data, content_type)
        except CacheWriteError as e:
            log.warning("[CACHE WRITE FAILED] key=%s error=%s", key, e)
            return
        except Exception:
            log.exception("[CACHE WRITE FAILED] key=%s", key)
            return
        log.info("[CACHE WRITE] key=%s bytes=%d", key, len(data))

    @staticmethod
    def failure(err: ThumbnailError) -> PlainTextResponse:
        return PlainTextResponse(str(err), status_code=err.status_code)
