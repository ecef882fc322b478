from __future__ import annotations

import logging
import time
from typing import Any, Optional, Sequence
from urllib.parse import urljoin

from app.core.logger import TaskLogger, redact_url
from app.domain.errors import ExtractionEmpty
from app.domain.note import NoteSummary
from app.services.selectors import COUNT_JS, LIST_JS, LIST_LAYOUTS, SCROLL_JS, ListLayout, note_id_from_url

logger = logging.getLogger("xhs-draft-relay")

# Consecutive scrolls without new nodes before the listing is considered exhausted.
STALL_LIMIT = 2


async def _wait_for_layout(page, layouts: Sequence[ListLayout], *, wait_ms: int, poll_ms: int) -> Optional[tuple[ListLayout, int]]:
    """Poll until one container selector matches; layouts are tried in priority order."""
    deadline = time.monotonic() + wait_ms / 1000.0
    while True:
        for layout in layouts:
            count = int(await page.evaluate(COUNT_JS, layout.container) or 0)
            if count > 0:
                return layout, count
        if time.monotonic() >= deadline:
            return None
        await page.wait_for_timeout(poll_ms)


async def _scroll_until(page, layout: ListLayout, count: int, *, desired_count: int, pause_ms: int, max_scrolls: int) -> int:
    stalls = 0
    scrolls = 0
    while count < desired_count and stalls < STALL_LIMIT and scrolls < max_scrolls:
        await page.evaluate(SCROLL_JS)
        scrolls += 1
        await page.wait_for_timeout(pause_ms)
        new_count = int(await page.evaluate(COUNT_JS, layout.container) or 0)
        if new_count > count:
            stalls = 0
            count = new_count
        else:
            stalls += 1
    logger.debug("listing scroll done (scrolls=%s count=%s stalls=%s)", scrolls, count, stalls)
    return count


def to_summary(raw: dict[str, Any], *, base_url: str) -> Optional[NoteSummary]:
    """Map one scraped node to a NoteSummary; None when it cannot be identified."""
    if not isinstance(raw, dict):
        return None
    link = str(raw.get("link") or "").strip()
    if link and not link.startswith(("javascript:", "#")):
        link = urljoin(base_url, link)
    else:
        link = ""
    note_id = str(raw.get("id") or "").strip() or note_id_from_url(link)
    if not note_id and not link:
        return None
    return NoteSummary(
        id=note_id,
        title=str(raw.get("title") or "").strip(),
        summary=str(raw.get("summary") or "").strip(),
        cover=str(raw.get("cover") or "").strip(),
        create_time=str(raw.get("create_time") or "").strip(),
        link=link,
    )


async def list_notes(session, profile_url: str, desired_count: int, *, trace_id: str | None = None) -> list[NoteSummary]:
    """Load a profile/listing page and return up to ``desired_count`` note summaries."""
    if desired_count <= 0:
        return []

    task = TaskLogger(trace_id)
    s = session.settings
    task.stage("note.stage", "list_start", url=redact_url(profile_url), desired=desired_count)

    async with session.page() as page:
        await session.navigate(profile_url, page=page, wait_until="domcontentloaded")

        matched = await _wait_for_layout(page, LIST_LAYOUTS, wait_ms=s.content_wait_ms, poll_ms=s.poll_interval_ms)
        if matched is None:
            task.stage("note.stage", "list_empty", url=redact_url(profile_url))
            raise ExtractionEmpty(f"no note list found on page: {redact_url(profile_url)}")
        layout, count = matched

        count = await _scroll_until(
            page,
            layout,
            count,
            desired_count=desired_count,
            pause_ms=s.scroll_pause_ms,
            max_scrolls=s.max_scrolls,
        )
        raw_items = await page.evaluate(LIST_JS, layout.to_js_arg()) or []

    notes: list[NoteSummary] = []
    for raw in raw_items:
        summary = to_summary(raw, base_url=profile_url)
        if summary is not None:
            notes.append(summary)
        if len(notes) >= desired_count:
            break

    task.stage("note.stage", "list_done", layout=layout.name, nodes=len(raw_items), notes=len(notes))
    return notes
