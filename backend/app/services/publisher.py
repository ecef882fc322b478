"""Turn an extracted note into a WeChat draft.

Pending -> TokenAcquired -> ImagesUploaded -> DraftSubmitted -> Success | Failed

A credential rejection anywhere in the sequence drops the cached token and the
whole sequence is replayed once.
"""

from __future__ import annotations

import asyncio
import html
import logging
import re
from enum import Enum
from typing import Optional

import requests

from app.core.logger import TaskLogger
from app.domain.errors import CredentialRejected, PlatformError, PublishFailed
from app.domain.note import DraftArticle, ImageRef, NoteDetail, PublishResult
from app.services.image_relay import ImageRelay, normalize_image_bytes
from app.services.note_detail import EMOJI_PLACEHOLDER_RE
from app.services.wechat_client import WeChatClient

logger = logging.getLogger("xhs-draft-relay")

TITLE_LIMIT = 64
DIGEST_LIMIT = 120

_TAG_RE = re.compile(r"<[^>]+>")
_EMOJI_RE = re.compile(
    "[\U0001F000-\U0001FAFF\U00002600-\U000027BF\u2300-\u23FF\u2B00-\u2BFF\uFE0F\u200D]"
)


class PublishStage(str, Enum):
    PENDING = "pending"
    TOKEN_ACQUIRED = "token_acquired"
    IMAGES_UPLOADED = "images_uploaded"
    DRAFT_SUBMITTED = "draft_submitted"
    SUCCESS = "success"
    FAILED = "failed"


def render_content_html(content: str, images: list[ImageRef]) -> str:
    """One paragraph per body line, then every image centered in upload order."""
    blocks: list[str] = []
    lines = (content or "").split("\n") if content else []
    for line in lines:
        text = line.strip()
        if text:
            blocks.append(f"<p>{html.escape(text)}</p>")
        else:
            blocks.append("<p><br/></p>")
    for ref in images:
        src = ref.platform_url or ref.public_url
        blocks.append(
            '<p style="text-align:center;">'
            f'<img src="{html.escape(src, quote=True)}" data-media-id="{html.escape(ref.media_id or "", quote=True)}" '
            'style="max-width:100%;"/></p>'
        )
    return "".join(blocks)


def build_digest(content: str, limit: int = DIGEST_LIMIT) -> str:
    text = html.unescape(_TAG_RE.sub("", content or ""))
    text = EMOJI_PLACEHOLDER_RE.sub("", text)
    text = _EMOJI_RE.sub("", text)
    text = re.sub(r"\s+", " ", text).strip()
    return text[:limit]


def _image_filename(index: int, content_type: str) -> str:
    ext = {"image/png": "png", "image/gif": "gif"}.get(content_type, "jpg")
    return f"note_image_{index + 1}.{ext}"


class Publisher:
    def __init__(self, client: WeChatClient, relay: ImageRelay, *, default_author: str = "", default_thumb_media_id: str = ""):
        self.client = client
        self.relay = relay
        self.default_author = default_author
        self.default_thumb_media_id = default_thumb_media_id

    async def publish(self, detail: NoteDetail, *, author: Optional[str] = None, trace_id: str | None = None) -> PublishResult:
        task = TaskLogger(trace_id)
        stages: list[str] = [PublishStage.PENDING.value]
        for attempt in (1, 2):
            try:
                result = await self._run_once(detail, author=author, stages=stages, task=task)
                stages.append(PublishStage.SUCCESS.value)
                result.stages = list(stages)
                task.stage("publish.stage", "success", media_id=result.media_id, attempt=attempt)
                return result
            except CredentialRejected as exc:
                self.client.tokens.invalidate()
                task.stage("publish.stage", "credential_rejected", attempt=attempt, error=str(exc))
                if attempt == 2:
                    stages.append(PublishStage.FAILED.value)
                    raise PublishFailed(
                        f"access token rejected twice: {exc}", stage="token", payload=exc.payload
                    ) from exc
                stages.append(PublishStage.PENDING.value)
            except PublishFailed as exc:
                stages.append(PublishStage.FAILED.value)
                task.stage("publish.stage", "failed", failed_stage=exc.stage, image_index=exc.image_index, error=str(exc))
                raise
        raise AssertionError("unreachable")

    async def _run_once(self, detail: NoteDetail, *, author: Optional[str], stages: list[str], task: TaskLogger) -> PublishResult:
        try:
            await asyncio.to_thread(self.client.access_token)
        except (requests.RequestException, PlatformError) as exc:
            raise PublishFailed(
                f"token request failed: {exc}", stage="token", payload=getattr(exc, "payload", None)
            ) from exc
        stages.append(PublishStage.TOKEN_ACQUIRED.value)

        refs = detail.ordered_images()
        for index, ref in enumerate(refs):
            await self._upload_one(index, ref)
        stages.append(PublishStage.IMAGES_UPLOADED.value)
        task.stage("publish.stage", "images_uploaded", images=len(refs))

        thumb = self._select_thumb(detail, refs)
        article = DraftArticle(
            title=(detail.title or "")[:TITLE_LIMIT],
            author=(author or self.default_author or "").strip(),
            digest=build_digest(detail.content),
            html_content=render_content_html(detail.content, refs),
            thumb_media_id=thumb,
            content_source_url=detail.source_url or "",
        )

        try:
            media_id = await asyncio.to_thread(self.client.add_draft, article)
        except PlatformError as exc:
            message = str((exc.payload or {}).get("errmsg") or exc)
            raise PublishFailed(message, stage="draft", payload=exc.payload) from exc
        except requests.RequestException as exc:
            raise PublishFailed(f"draft request failed: {exc}", stage="draft") from exc
        stages.append(PublishStage.DRAFT_SUBMITTED.value)
        return PublishResult(media_id=media_id, thumb_media_id=thumb)

    async def _upload_one(self, index: int, ref: ImageRef) -> None:
        try:
            raw = await self.relay.load_bytes(ref)
            data, ctype = normalize_image_bytes(raw)
            payload = await asyncio.to_thread(
                self.client.upload_image, data, filename=_image_filename(index, ctype), content_type=ctype
            )
        except CredentialRejected:
            raise
        except PlatformError as exc:
            raise PublishFailed(
                f"image {index} upload failed: {exc}", stage="upload", image_index=index, payload=exc.payload
            ) from exc
        except Exception as exc:
            # Store reads and image fetches fail in backend-specific ways; all of them are upload failures.
            raise PublishFailed(f"image {index} upload failed: {exc}", stage="upload", image_index=index) from exc
        ref.media_id = str(payload.get("media_id"))
        ref.platform_url = str(payload.get("url") or "") or None

    def _select_thumb(self, detail: NoteDetail, refs: list[ImageRef]) -> str:
        if detail.cover_image is not None and detail.cover_image.media_id:
            return detail.cover_image.media_id
        for ref in refs:
            if ref.media_id:
                return ref.media_id
        if self.default_thumb_media_id:
            return self.default_thumb_media_id
        raise PublishFailed("note has no image usable as thumbnail", stage="thumbnail")
