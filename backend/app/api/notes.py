from __future__ import annotations

import asyncio
import traceback
import uuid
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from app.core.logger import TaskLogger, redact_url
from app.domain.errors import PipelineError, PublishFailed
from app.domain.note import ImageRef, NoteDetail
from app.services.image_relay import fetch_image_bytes, is_allowed_image_host, source_headers
from app.services.note_detail import dedupe_image_urls
from app.services.pipeline import PipelineContext
from app.services.selectors import normalize_image_url, strip_query

router = APIRouter(tags=["notes"])


class PublishRequest(BaseModel):
    url: Optional[str] = None
    title: str = ""
    content: str = ""
    images: List[str] = []
    coverImage: Optional[str] = None
    author: Optional[str] = None


def _pipeline(request: Request) -> PipelineContext:
    return request.app.state.pipeline


def _trace_id(request: Request) -> str:
    return (request.headers.get("X-Trace-Id") or "").strip() or str(uuid.uuid4())


def _error_detail(pipeline: PipelineContext, exc: Exception) -> dict:
    detail = exc.to_dict() if isinstance(exc, PipelineError) else {"message": str(exc), "error_type": type(exc).__name__}
    if not pipeline.settings.production:
        detail["error"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return detail


def _raise_http(pipeline: PipelineContext, task: TaskLogger, exc: Exception) -> None:
    if isinstance(exc, PipelineError):
        status = exc.status_code
    elif isinstance(exc, asyncio.TimeoutError):
        status = 504
    else:
        status = 500
    task.error("note.stage", stage="error", status_code=status, error=str(exc))
    raise HTTPException(status_code=status, detail=_error_detail(pipeline, exc)) from exc


@router.get("/notes")
async def fetch_notes(
    request: Request,
    url: str = Query(..., description="profile / listing url"),
    limit: int = Query(10, ge=1, le=200),
):
    pipeline = _pipeline(request)
    task = TaskLogger(_trace_id(request))
    try:
        notes = await pipeline.run(pipeline.list_notes(url.strip(), limit, trace_id=task.trace_id))
    except Exception as exc:
        _raise_http(pipeline, task, exc)
    return [n.to_dict() for n in notes]


@router.get("/note")
async def fetch_note(
    request: Request,
    url: str = Query(..., description="note url"),
    relay: bool = Query(True, description="rehost images before returning"),
):
    pipeline = _pipeline(request)
    task = TaskLogger(_trace_id(request))
    try:
        detail = await pipeline.run(pipeline.fetch_detail(url.strip(), relay=relay, trace_id=task.trace_id))
    except Exception as exc:
        _raise_http(pipeline, task, exc)
    return detail.to_dict()


def _detail_from_request(body: PublishRequest) -> NoteDetail:
    # Client-supplied images are expected to be publicly fetchable already.
    cover_url = normalize_image_url(body.coverImage or "")
    exclude = {strip_query(cover_url)} if cover_url else set()
    images = [ImageRef(original_url=u, relay_url=u) for u in dedupe_image_urls(body.images, exclude_keys=exclude)]
    cover = ImageRef(original_url=cover_url, relay_url=cover_url) if cover_url else None
    return NoteDetail(title=body.title.strip(), content=body.content, source_url="", images=images, cover_image=cover)


@router.post("/publish")
async def publish_note(request: Request, body: PublishRequest):
    pipeline = _pipeline(request)
    task = TaskLogger(_trace_id(request))
    if not body.url and not (body.title.strip() or body.content.strip()):
        raise HTTPException(status_code=400, detail={"success": False, "message": "url or title/content required"})

    try:
        if body.url:
            task.info("publish.stage", stage="publish_url", url=redact_url(body.url))
            result = await pipeline.run(pipeline.publish_url(body.url.strip(), author=body.author, trace_id=task.trace_id))
        else:
            result = await pipeline.run(pipeline.publish(_detail_from_request(body), author=body.author, trace_id=task.trace_id))
    except PublishFailed as exc:
        task.error("publish.stage", stage="error", failed_stage=exc.stage, image_index=exc.image_index, error=str(exc))
        return JSONResponse(status_code=exc.status_code, content=_error_detail(pipeline, exc))
    except Exception as exc:
        _raise_http(pipeline, task, exc)
    return result.to_dict()


@router.get("/image")
def proxy_image(request: Request, url: str = Query(..., description="XHS CDN image url")):
    pipeline = _pipeline(request)
    if not is_allowed_image_host(url):
        raise HTTPException(status_code=400, detail="image url not allowed")
    try:
        data, ctype = fetch_image_bytes(url, source_headers(pipeline.settings, pipeline.settings.cookie, url=url))
        return Response(content=data, media_type=ctype)
    except Exception as exc:
        raise HTTPException(status_code=400, detail=f"image proxy failed: {exc}") from exc
