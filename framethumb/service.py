import asyncio
import logging
from dataclasses import dataclass
from typing import Dict

from framethumb.errors import GenerationError
from framethumb.job_manager import GenerationScheduler
from framethumb.keys import derive_key
from framethumb.schemas import GenerationResult, RenderJob, ThumbnailRequest
from framethumb.storage import CacheStore, SourceResolver
from framethumb.workers import FrameRenderer, make_task

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThumbnailOutcome:
    key: str
    data: bytes
    content_type: str
    cached: bool


class ThumbnailService:
    """Cache lookup, then source resolution and scheduled generation on a miss."""

    def __init__(
        self,
        cache: CacheStore,
        resolver: SourceResolver,
        renderer: FrameRenderer,
        scheduler: GenerationScheduler,
        cache_prefix: str = "",
        coalesce: bool = False,
    ):
        self.cache = cache
        self.resolver = resolver
        self.renderer = renderer
        self.scheduler = scheduler
        self.cache_prefix = cache_prefix
        self.coalesce = coalesce
        self._inflight: Dict[str, "asyncio.Future[GenerationResult]"] = {}

    async def get_thumbnail(self, req: ThumbnailRequest) -> ThumbnailOutcome:
        key = derive_key(req, self.cache_prefix)

        hit = await self.cache.get(key)
        if hit is not None:
            log.info("[CACHE HIT] key=%s video=%s", key, req.video_key)
            return ThumbnailOutcome(key=key, data=hit.data, content_type=hit.content_type, cached=True)

        log.info(
            "[GENERATE] key=%s video=%s time=%s size=%dx%d fit=%s encoding=%s",
            key, req.video_key, req.time_raw, req.width, req.height, req.fit, req.encoding,
        )
        if self.coalesce:
            result = await self._shared_generation(key, req)
        else:
            result = await self._generate(key, req)

        if not result.ok:
            raise GenerationError(result.reason or "Failed to generate thumbnail")
        return ThumbnailOutcome(key=key, data=result.data, content_type=result.content_type, cached=False)

    async def _generate(self, key: str, req: ThumbnailRequest) -> GenerationResult:
        source_url = await self.resolver.resolve_read_url(req.video_key)
        task = make_task(self.renderer, RenderJob.for_request(req, source_url), label=key)
        return await self.scheduler.submit(task)

    async def _shared_generation(self, key: str, req: ThumbnailRequest) -> GenerationResult:
        fut = self._inflight.get(key)
        if fut is None:
            fut = asyncio.ensure_future(self._generate(key, req))
            self._inflight[key] = fut
            fut.add_done_callback(lambda _: self._inflight.pop(key, None))
        else:
            log.info("[COALESCED] key=%s", key)
        # one waiter going away must not cancel the generation for the others
        return await asyncio.shield(fut)
