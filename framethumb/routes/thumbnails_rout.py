import logging

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import PlainTextResponse, Response

from framethumb.errors import ThumbnailError
from framethumb.params import normalize

log = logging.getLogger(__name__)

router = APIRouter(tags=["thumbnails"])

QUERY_FIELDS = ("key", "time", "width", "height", "fit")


@router.get("/generate-thumbnail")
async def generate_thumbnail(request: Request, background: BackgroundTasks) -> Response:
    state = request.app.state
    raw = {name: request.query_params.get(name) for name in QUERY_FIELDS}
    try:
        req = normalize(raw, request.headers.get("accept"), state.settings)
        outcome = await state.service.get_thumbnail(req)
    except ThumbnailError as e:
        if e.status_code >= 500:
            log.error("[REQUEST FAILED] key=%s error=%s", raw["key"], e)
        else:
            log.info("[BAD REQUEST] %s", e)
        return state.publisher.failure(e)
    except Exception as e:
        log.exception("[REQUEST ERROR] key=%s", raw["key"])
        return PlainTextResponse(f"Error processing request: {e}", status_code=500)
    return state.publisher.publish(outcome, background)


@router.get("/healthz")
async def health(request: Request):
    return {"ok": True, "scheduler": request.app.state.scheduler.stats().model_dump()}
