"""Note detail extraction (title, body text, ordered images) from a rendered note page."""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Optional

from app.core.logger import TaskLogger, redact_url
from app.domain.errors import ExtractionFailed
from app.domain.note import ImageRef, NoteDetail
from app.services.selectors import (
    CONTENT_STRATEGIES,
    COVER_STRATEGIES,
    DETAIL_PROBE_JS,
    IMAGE_STRATEGIES,
    TITLE_STRATEGIES,
    detail_probe_arg,
    first_match,
    normalize_image_url,
    strip_query,
)

logger = logging.getLogger("xhs-draft-relay")

# [笑哭R], [doge], [小红书表情] ... rendered as inline emoji images on the site.
# Digits never appear in these names, so [1] or [2024] survive.
EMOJI_PLACEHOLDER_RE = re.compile(r"\[(?:[\u4e00-\u9fff]{1,8}|[A-Za-z]{2,12})R?\]")
_ZERO_WIDTH_RE = re.compile(r"[\u200b\u200c\u200d\ufeff]")


def clean_content_text(value: str) -> str:
    text = str(value or "")
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _ZERO_WIDTH_RE.sub("", text)
    text = EMOJI_PLACEHOLDER_RE.sub("", text)
    lines = [line.strip() for line in text.split("\n")]
    # compact blank lines
    out: list[str] = []
    blank = False
    for line in lines:
        if not line:
            if not blank:
                out.append("")
            blank = True
            continue
        blank = False
        out.append(line)
    return "\n".join(out).strip()


def clean_title(title: str) -> str:
    """Normalize page titles (strip site suffix, collapse whitespace)."""
    t = re.sub(r"\s+", " ", (title or "").strip())
    t = EMOJI_PLACEHOLDER_RE.sub("", t).strip()
    return re.sub(r"\s*[-|｜]\s*小红书\s*$", "", t).strip()


def strip_leading_title(title: str, content: str) -> str:
    """Some layouts repeat the title as the first content line."""
    t = clean_title(title)
    if not t or not content:
        return content
    first, _, rest = content.partition("\n")
    if clean_title(first) == t:
        return rest.strip()
    return content


def dedupe_image_urls(urls: list[str], *, exclude_keys: Optional[set[str]] = None) -> list[str]:
    """Keep first-seen order; two urls are the same asset when equal without their query string."""
    seen: set[str] = set(exclude_keys or ())
    out: list[str] = []
    for raw in urls or []:
        if not isinstance(raw, str) or not raw.strip():
            continue
        url = normalize_image_url(raw)
        key = strip_query(url)
        if key in seen:
            continue
        seen.add(key)
        out.append(url)
    return out


def select_images(probe: dict[str, Any]) -> tuple[Optional[str], list[str]]:
    """Apply the cover + image cascades to probe results.

    Returns ``(cover_url, body_urls)``; the cover never reappears in the body list.
    """
    _, cover = first_match(COVER_STRATEGIES, probe.get("cover") or [])
    cover_url = normalize_image_url(cover) if isinstance(cover, str) and cover else None

    body: list[str] = []
    per_selector = probe.get("images") or []
    for strategy, urls in zip(IMAGE_STRATEGIES, per_selector):
        accepted = [u for u in (urls or []) if isinstance(u, str) and strategy.accept(u)]
        if accepted:
            body = accepted
            break

    exclude = {strip_query(cover_url)} if cover_url else set()
    return cover_url, dedupe_image_urls(body, exclude_keys=exclude)


def build_detail(probe: dict[str, Any], *, source_url: str) -> NoteDetail:
    title_strategy, title = first_match(TITLE_STRATEGIES, probe.get("title") or [])
    content_strategy, content = first_match(CONTENT_STRATEGIES, probe.get("content") or [])
    if title_strategy is None and content_strategy is None:
        raise ExtractionFailed(f"no title/content selector matched: {redact_url(source_url)}")

    title = clean_title(title or "")
    content = clean_content_text(strip_leading_title(title, clean_content_text(content or "")))
    cover_url, body_urls = select_images(probe)
    return NoteDetail(
        title=title,
        content=content,
        source_url=source_url,
        images=[ImageRef(original_url=u) for u in body_urls],
        cover_image=ImageRef(original_url=cover_url) if cover_url else None,
    )


def _has_text(probe: dict[str, Any]) -> bool:
    return any(isinstance(v, str) and v.strip() for v in (probe.get("title") or []) + (probe.get("content") or []))


async def _probe_until_ready(page, *, wait_ms: int, poll_ms: int) -> dict[str, Any]:
    arg = detail_probe_arg()
    deadline = time.monotonic() + wait_ms / 1000.0
    while True:
        probe = await page.evaluate(DETAIL_PROBE_JS, arg)
        probe = probe if isinstance(probe, dict) else {}
        if _has_text(probe) or time.monotonic() >= deadline:
            return probe
        await page.wait_for_timeout(poll_ms)


async def extract_detail(session, note_url: str, *, trace_id: str | None = None) -> NoteDetail:
    task = TaskLogger(trace_id)
    s = session.settings
    task.stage("note.stage", "detail_start", url=redact_url(note_url))

    async with session.page() as page:
        await session.navigate(note_url, page=page, wait_until="domcontentloaded")
        probe = await _probe_until_ready(page, wait_ms=s.content_wait_ms, poll_ms=s.poll_interval_ms)

    try:
        detail = build_detail(probe, source_url=note_url)
    except ExtractionFailed:
        task.stage("note.stage", "detail_failed", url=redact_url(note_url))
        raise

    task.stage(
        "note.stage",
        "detail_done",
        title_len=len(detail.title),
        content_len=len(detail.content),
        images=len(detail.images),
        has_cover=detail.cover_image is not None,
    )
    return detail
