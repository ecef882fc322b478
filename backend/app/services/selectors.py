"""Selector cascades for the XHS web client.

The site ships several DOM layouts at the same time (old `.note-card` listings,
the `section.note-item` feed, the `#detail-*` note page, swiper carousels).
Each cascade below is an ordered list of strategies; the first one that yields
a value wins. New layouts are added by appending entries, not by branching.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, TypeVar
from urllib.parse import urlparse

CDN_HOST_MARKERS = ("xhscdn.com", "xhsimg.com", "sns-webpic")
EXCLUDED_IMAGE_MARKERS = ("avatar", "emoji")


@dataclass(frozen=True)
class ListLayout:
    """A listing layout: container node selector + per-field sub-selectors.

    ``fields`` maps a NoteSummary field to ``(selector, attribute)``; an empty
    selector targets the container itself, attribute ``text`` reads textContent.
    """

    name: str
    container: str
    fields: dict = field(default_factory=dict)

    def to_js_arg(self) -> dict:
        return {
            "container": self.container,
            "fields": [[k, sel, attr] for k, (sel, attr) in self.fields.items()],
        }


@dataclass(frozen=True)
class TextStrategy:
    name: str
    selector: str


@dataclass(frozen=True)
class ImageStrategy:
    name: str
    selector: str
    accept: Callable[[str], bool]


T = TypeVar("T")


def first_match(strategies: Sequence[T], values: Sequence) -> tuple[Optional[T], object]:
    """Pair strategies with probed values; return the first non-empty one."""
    for strategy, value in zip(strategies, values):
        if isinstance(value, str):
            value = value.strip()
        if value:
            return strategy, value
    return None, None


def normalize_image_url(raw_url: str) -> str:
    url = html.unescape((raw_url or "").strip())
    if url.startswith("//"):
        url = f"https:{url}"
    return url


def strip_query(raw_url: str) -> str:
    """Dedup key for an image: query string and fragment carry size/format variants."""
    url = normalize_image_url(raw_url)
    return url.split("#", 1)[0].split("?", 1)[0]


def is_cdn_image(url: str) -> bool:
    u = normalize_image_url(url)
    if not u.startswith(("http://", "https://")):
        return False
    host = (urlparse(u).netloc or "").lower()
    return any(marker in host for marker in CDN_HOST_MARKERS)


def is_note_image(url: str) -> bool:
    """CDN image that is not an avatar/emoji asset (substring match on the url)."""
    if not is_cdn_image(url):
        return False
    lower = normalize_image_url(url).lower()
    return not any(marker in lower for marker in EXCLUDED_IMAGE_MARKERS)


def _any_image(url: str) -> bool:
    u = normalize_image_url(url).lower()
    if not u.startswith(("http://", "https://")):
        return False
    return not any(marker in u for marker in EXCLUDED_IMAGE_MARKERS)


LIST_LAYOUTS: list[ListLayout] = [
    ListLayout(
        name="note-card",
        container=".note-card",
        fields={
            "id": ("", "data-id"),
            "title": (".note-title", "text"),
            "summary": (".note-desc", "text"),
            "cover": (".note-cover img", "src"),
            "create_time": (".note-time", "data-time"),
            "link": (".note-link, a", "href"),
        },
    ),
    ListLayout(
        name="feed-section",
        container="section.note-item",
        fields={
            "id": ("", "data-note-id"),
            "title": (".footer .title, .title", "text"),
            "summary": (".desc", "text"),
            "cover": ("a.cover img, img", "src"),
            "create_time": (".time", "text"),
            "link": ("a.cover, a[href*='/explore/'], a", "href"),
        },
    ),
    ListLayout(
        name="feeds-container",
        container=".feeds-container .note-item, [class*='feeds'] [class*='note-item']",
        fields={
            "id": ("", "data-id"),
            "title": ("[class*='title']", "text"),
            "summary": ("[class*='desc']", "text"),
            "cover": ("img", "src"),
            "create_time": ("[class*='time']", "text"),
            "link": ("a[href*='/explore/'], a[href*='/discovery/item/'], a", "href"),
        },
    ),
]

TITLE_STRATEGIES: list[TextStrategy] = [
    TextStrategy("detail-title", "#detail-title"),
    TextStrategy("note-title", ".note-content .title, .note-title"),
    TextStrategy("title", ".title"),
    TextStrategy("heading", "h1"),
]

CONTENT_STRATEGIES: list[TextStrategy] = [
    TextStrategy("detail-desc", "#detail-desc"),
    TextStrategy("note-text", ".note-content .desc, .note-text"),
    TextStrategy("desc", ".desc"),
    TextStrategy("content", ".note-content, .content"),
]

# Carousel containers: a cover element inside one of these is a slide, not a cover.
CAROUSEL_CONTAINERS = ".swiper, .swiper-wrapper, .note-slider, .media-container, [class*='slider']"

COVER_STRATEGIES: list[TextStrategy] = [
    TextStrategy("note-cover", ".note-cover img"),
    TextStrategy("cover", "[class*='cover'] img, img[class*='cover']"),
]

IMAGE_STRATEGIES: list[ImageStrategy] = [
    ImageStrategy(
        "swiper-slides",
        ".swiper-slide:not(.swiper-slide-duplicate) img, .swiper-slide:not(.swiper-slide-duplicate) [style*='background-image']",
        _any_image,
    ),
    ImageStrategy("slider-img", ".note-slider-img", _any_image),
    ImageStrategy("note-image", ".note-image img, .note-img img", _any_image),
    ImageStrategy("cdn-fallback", "img", is_note_image),
]

# Non-content nodes removed from the content container before reading its text.
CONTENT_CHROME_SELECTORS = "img.note-content-emoji, button, .bottom-container, .interactions, .engage-bar, .note-scroller-footer"


# --- in-page scripts -------------------------------------------------------

COUNT_JS = """
(selector) => document.querySelectorAll(selector).length
"""

SCROLL_JS = """
() => {
  const before = window.scrollY;
  window.scrollBy(0, window.innerHeight);
  return window.scrollY - before;
}
"""

LIST_JS = """
(arg) => {
  const read = (node, sel, attr) => {
    let el = node;
    if (sel) {
      el = null;
      for (const s of sel.split(',')) {
        el = node.querySelector(s.trim());
        if (el) break;
      }
    }
    if (!el) return '';
    if (attr === 'text') return (el.textContent || '').trim();
    if (attr === 'href') return el.href || el.getAttribute('href') || '';
    if (attr === 'src') return el.currentSrc || el.src || el.getAttribute('data-src') || '';
    return el.getAttribute(attr) || '';
  };
  return Array.from(document.querySelectorAll(arg.container)).map(node => {
    const out = {};
    for (const [name, sel, attr] of arg.fields) out[name] = read(node, sel, attr);
    return out;
  });
}
"""

DETAIL_PROBE_JS = """
(arg) => {
  const srcOf = (el) => {
    if (!el) return '';
    if (el.tagName === 'IMG') {
      return el.currentSrc || el.src || el.getAttribute('data-src') || '';
    }
    const bg = (el.style && el.style.backgroundImage) || getComputedStyle(el).backgroundImage || '';
    const m = bg.match(/url\\(["']?([^"')]+)["']?\\)/);
    return m ? m[1] : '';
  };
  const textOf = (el) => {
    if (!el) return '';
    const clone = el.cloneNode(true);
    clone.querySelectorAll(arg.chrome).forEach(n => n.remove());
    clone.querySelectorAll('br').forEach(br => br.replaceWith('\\n'));
    clone.querySelectorAll('p, div, li').forEach(n => n.append('\\n'));
    return (clone.textContent || '').trim();
  };
  const inCarousel = (el) => !!(el && el.closest(arg.carousel));
  return {
    title: arg.title.map(sel => textOf(document.querySelector(sel))),
    content: arg.content.map(sel => textOf(document.querySelector(sel))),
    cover: arg.cover.map(sel => {
      const el = Array.from(document.querySelectorAll(sel)).find(n => !inCarousel(n));
      return srcOf(el);
    }),
    images: arg.images.map(sel => Array.from(document.querySelectorAll(sel)).map(srcOf).filter(Boolean)),
  };
}
"""

FETCH_IMAGE_JS = """
async (src) => {
  const toJpeg = (source, w, h) => {
    const canvas = document.createElement('canvas');
    canvas.width = w;
    canvas.height = h;
    const ctx = canvas.getContext('2d');
    ctx.fillStyle = '#ffffff';
    ctx.fillRect(0, 0, w, h);
    ctx.drawImage(source, 0, 0);
    return canvas.toDataURL('image/jpeg', 0.92);
  };
  try {
    const resp = await fetch(src, { credentials: 'include', referrer: location.origin + '/' });
    if (resp.ok) {
      const bitmap = await createImageBitmap(await resp.blob());
      return toJpeg(bitmap, bitmap.width, bitmap.height);
    }
  } catch (e) {}
  return await new Promise((resolve) => {
    const img = new Image();
    img.crossOrigin = 'anonymous';
    img.onload = () => {
      try { resolve(toJpeg(img, img.naturalWidth, img.naturalHeight)); } catch (e) { resolve(''); }
    };
    img.onerror = () => resolve('');
    img.src = src;
  });
}
"""


def detail_probe_arg() -> dict:
    return {
        "title": [s.selector for s in TITLE_STRATEGIES],
        "content": [s.selector for s in CONTENT_STRATEGIES],
        "cover": [s.selector for s in COVER_STRATEGIES],
        "images": [s.selector for s in IMAGE_STRATEGIES],
        "carousel": CAROUSEL_CONTAINERS,
        "chrome": CONTENT_CHROME_SELECTORS,
    }


_NOTE_ID_PATTERNS = (
    r"/explore/([0-9a-zA-Z]+)",
    r"/discovery/item/([0-9a-zA-Z]+)",
    r"[?&]noteId=([0-9a-zA-Z]+)",
    r"[?&]note_id=([0-9a-zA-Z]+)",
)


def note_id_from_url(url: str) -> str:
    for pattern in _NOTE_ID_PATTERNS:
        match = re.search(pattern, url or "")
        if match:
            return match.group(1)
    return ""
