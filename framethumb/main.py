import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from framethumb.config import Settings, settings as default_settings
from framethumb.job_manager import GenerationScheduler
from framethumb.publisher import ResponsePublisher
from framethumb.routes.thumbnails_rout import router as thumbnails_router
from framethumb.service import ThumbnailService
from framethumb.storage import CacheStore, SourceResolver, build_cache_store, build_source_resolver
from framethumb.workers import FrameRenderer, build_renderer


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def create_app(
    cfg: Optional[Settings] = None,
    *,
    cache: Optional[CacheStore] = None,
    resolver: Optional[SourceResolver] = None,
    renderer: Optional[FrameRenderer] = None,
) -> FastAPI:
    cfg = cfg or default_settings
    configure_logging(cfg.LOG_LEVEL)

    cache = cache or build_cache_store(cfg)
    scheduler = GenerationScheduler(limit=cfg.MAX_CONCURRENCY)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler.start()
        try:
            yield
        finally:
            await scheduler.shutdown()

    app = FastAPI(title="Video frame thumbnails (framethumb)", version="0.1.0", lifespan=lifespan)
    app.state.settings = cfg
    app.state.scheduler = scheduler
    app.state.service = ThumbnailService(
        cache=cache,
        resolver=resolver or build_source_resolver(cfg),
        renderer=renderer or build_renderer(cfg),
        scheduler=scheduler,
        cache_prefix=cfg.CACHE_PREFIX,
        coalesce=cfg.COALESCE_INFLIGHT,
    )
    app.state.publisher = ResponsePublisher(cache, cfg.CACHE_CONTROL, negotiated=cfg.AVIF_ENABLED)
    app.include_router(thumbnails_router)
    return app


def main() -> None:
    app = create_app()
    uvicorn.run(app, host=default_settings.HOST, port=default_settings.PORT)


if __name__ == "__main__":
    main()
