"""Explicit owner of the process-wide pipeline state.

Holds the browser session, the relay store and the WeChat token cache, and
exposes the list / detail / publish operations. Tests build one with fakes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from app.core.config import Settings
from app.domain.note import NoteDetail, NoteSummary, PublishResult
from app.services.browser_session import BrowserSession
from app.services.image_relay import ImageRelay
from app.services.note_detail import extract_detail
from app.services.note_list import list_notes
from app.services.publisher import Publisher
from app.services.relay_store import build_relay_store
from app.services.wechat_client import TokenCache, WeChatClient

logger = logging.getLogger("xhs-draft-relay")


class PipelineContext:
    def __init__(
        self,
        settings: Settings,
        *,
        session=None,
        store=None,
        wechat: Optional[WeChatClient] = None,
        relay: Optional[ImageRelay] = None,
    ):
        self.settings = settings
        self.session = session if session is not None else BrowserSession(settings)
        self.store = store if store is not None else build_relay_store(settings)
        self.relay = relay or ImageRelay(settings, self.store, session=self.session)
        self.wechat = wechat or WeChatClient(settings, token_cache=TokenCache())
        self.publisher = Publisher(
            self.wechat,
            self.relay,
            default_author=settings.wechat_author,
            default_thumb_media_id=settings.wechat_default_thumb_media_id,
        )

    @classmethod
    def from_env(cls) -> "PipelineContext":
        return cls(Settings.from_env())

    async def list_notes(self, profile_url: str, limit: int, *, trace_id: str | None = None) -> list[NoteSummary]:
        return await list_notes(self.session, profile_url, limit, trace_id=trace_id)

    async def fetch_detail(self, note_url: str, *, relay: bool = True, trace_id: str | None = None) -> NoteDetail:
        detail = await extract_detail(self.session, note_url, trace_id=trace_id)
        if relay:
            await self.relay.relay_note(detail, trace_id=trace_id)
        return detail

    async def publish(self, detail: NoteDetail, *, author: Optional[str] = None, trace_id: str | None = None) -> PublishResult:
        return await self.publisher.publish(detail, author=author, trace_id=trace_id)

    async def publish_url(self, note_url: str, *, author: Optional[str] = None, trace_id: str | None = None) -> PublishResult:
        detail = await self.fetch_detail(note_url, relay=True, trace_id=trace_id)
        return await self.publish(detail, author=author, trace_id=trace_id)

    async def run(self, coro):
        """Apply the caller-level timeout; the browser session survives a cancelled operation."""
        return await asyncio.wait_for(coro, timeout=self.settings.pipeline_timeout_s)

    async def close(self) -> None:
        await self.session.close()
