"""Image acquisition + relay.

Each note image is fetched (direct GET with the source site's headers, then an
in-browser fetch/canvas fallback), checked with Pillow, and saved to the relay
store. Images of one note are relayed concurrently; order is preserved.
"""

from __future__ import annotations

import asyncio
import base64
import io
import ipaddress
import logging
from typing import Callable, Optional
from urllib.parse import urlparse

import requests
from PIL import Image, UnidentifiedImageError

from app.core.config import Settings
from app.core.logger import TaskLogger, redact_url
from app.domain.errors import PipelineError, RelayFailed
from app.domain.note import ImageRef, NoteDetail
from app.services.relay_store import RelayStore
from app.services.selectors import FETCH_IMAGE_JS, strip_query

logger = logging.getLogger("xhs-draft-relay")

# Formats the publish platform accepts as-is; anything else is re-encoded to JPEG.
_PASSTHROUGH_FORMATS = {"JPEG": "image/jpeg", "PNG": "image/png", "GIF": "image/gif"}


def is_allowed_image_host(url: str) -> bool:
    try:
        p = urlparse(url)
    except Exception:
        return False
    if p.scheme not in {"http", "https"}:
        return False
    host = (p.netloc or "").lower()
    # Strict suffix match, avoid substring SSRF.
    if host == "picasso-static.xiaohongshu.com":
        return True
    allowed_suffixes = (".xhscdn.com", ".xhsimg.com")
    return any(host.endswith(suf) for suf in allowed_suffixes)


def is_public_http_url(url: str) -> bool:
    """http(s) url whose host is not loopback, private or link-local (literal hosts only)."""
    try:
        p = urlparse(url)
    except ValueError:
        return False
    if p.scheme not in {"http", "https"}:
        return False
    host = (p.hostname or "").lower()
    if not host or host == "localhost" or host.endswith(".localhost"):
        return False
    try:
        return ipaddress.ip_address(host).is_global
    except ValueError:
        return True


def source_headers(settings: Settings, cookie: str = "", *, url: str = "") -> dict[str, str]:
    """Request headers for an image fetch; Referer and Cookie only go to source CDN hosts."""
    headers = {
        "User-Agent": settings.user_agent,
        "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
    }
    if url and not is_allowed_image_host(url):
        return headers
    headers["Referer"] = settings.source_origin
    if cookie:
        headers["Cookie"] = cookie
    return headers


def fetch_image_bytes(url: str, headers: dict[str, str], timeout: float = 20) -> tuple[bytes, str]:
    r = requests.get(url, headers=headers, timeout=timeout)
    r.raise_for_status()
    ctype = (r.headers.get("content-type") or "application/octet-stream").split(";", 1)[0].strip()
    data = r.content or b""
    if not data:
        raise ValueError("empty image body")
    return data, ctype


def normalize_image_bytes(data: bytes) -> tuple[bytes, str]:
    """Return decodable bytes in a platform-accepted format (raises ValueError otherwise)."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = (img.format or "").upper()
            if fmt in _PASSTHROUGH_FORMATS:
                img.verify()
                return data, _PASSTHROUGH_FORMATS[fmt]
            img.load()
            if img.mode in ("RGBA", "LA", "P"):
                rgba = img.convert("RGBA")
                background = Image.new("RGB", rgba.size, (255, 255, 255))
                background.paste(rgba, mask=rgba.split()[-1])
                img = background
            elif img.mode != "RGB":
                img = img.convert("RGB")
            buf = io.BytesIO()
            img.save(buf, format="JPEG", quality=92)
            return buf.getvalue(), "image/jpeg"
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ValueError(f"undecodable image: {exc}") from exc


def decode_data_url(data_url: str) -> bytes:
    if not data_url or not data_url.startswith("data:image") or "," not in data_url:
        raise ValueError("browser fetch returned no image")
    return base64.b64decode(data_url.split(",", 1)[1])


class ImageRelay:
    def __init__(
        self,
        settings: Settings,
        store: RelayStore,
        *,
        session=None,
        fetcher: Optional[Callable[..., tuple[bytes, str]]] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.settings = settings
        self.store = store
        self.session = session
        self._fetch = fetcher or fetch_image_bytes
        self._sleep = sleep

    async def _fetch_direct(self, url: str) -> bytes:
        cookie = ""
        if is_allowed_image_host(url):
            if self.session is not None and getattr(self.session, "is_open", False):
                cookie = await self.session.cookie_header()
            else:
                cookie = self.settings.cookie
        data, _ = await asyncio.to_thread(
            self._fetch, url, source_headers(self.settings, cookie, url=url), self.settings.relay_timeout_s
        )
        return data

    async def _fetch_in_browser(self, url: str) -> bytes:
        async with self.session.page() as page:
            await self.session.navigate(self.settings.source_origin, page=page, wait_until="domcontentloaded")
            try:
                data_url = await page.evaluate(FETCH_IMAGE_JS, url)
            except Exception as exc:
                raise ValueError(f"browser image fetch failed: {exc}") from exc
        return decode_data_url(data_url or "")

    async def acquire(self, url: str) -> tuple[bytes, str]:
        """One acquisition attempt: direct GET first, in-browser fetch when that is blocked."""
        try:
            return normalize_image_bytes(await self._fetch_direct(url))
        except (requests.RequestException, ValueError) as exc:
            if self.session is None:
                raise
            logger.info("direct image fetch failed, trying browser: %s (%s)", redact_url(url), exc)
        return normalize_image_bytes(await self._fetch_in_browser(url))

    async def relay(self, ref: ImageRef) -> ImageRef:
        url = ref.original_url
        attempts = self.settings.relay_max_attempts
        if not is_public_http_url(url):
            raise RelayFailed(f"refusing to fetch non-public image url: {redact_url(url)}", url=url, attempts=0)
        last_exc: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                data, ctype = await asyncio.wait_for(self.acquire(url), timeout=self.settings.relay_timeout_s * 2)
                relay_url = await asyncio.to_thread(self.store.save, strip_query(url), data, ctype)
                return ref.with_relay(relay_url)
            except (requests.RequestException, ValueError, OSError, PipelineError, asyncio.TimeoutError) as exc:
                last_exc = exc
                logger.warning("image relay attempt %s/%s failed for %s: %s", attempt, attempts, redact_url(url), exc)
                if attempt < attempts:
                    await self._sleep(self.settings.relay_backoff_s * (2 ** (attempt - 1)))
        raise RelayFailed(f"image relay failed after {attempts} attempts: {last_exc}", url=url, attempts=attempts)

    async def relay_or_placeholder(self, ref: ImageRef) -> ImageRef:
        try:
            return await self.relay(ref)
        except RelayFailed:
            if self.settings.relay_failure_policy == "fail":
                raise
            placeholder = await asyncio.to_thread(self.store.placeholder_url)
            return ref.with_relay(placeholder, failed=True)

    async def relay_note(self, detail: NoteDetail, *, trace_id: str | None = None) -> NoteDetail:
        """Relay every image of ``detail`` (cover first) and write the results back in place."""
        task = TaskLogger(trace_id)
        refs = detail.ordered_images()
        if not refs:
            return detail
        task.stage("relay.stage", "relay_start", images=len(refs))

        sem = asyncio.Semaphore(self.settings.relay_concurrency)

        async def _one(ref: ImageRef) -> ImageRef:
            async with sem:
                return await self.relay_or_placeholder(ref)

        tasks = [asyncio.ensure_future(_one(ref)) for ref in refs]
        try:
            relayed = await asyncio.gather(*tasks)
        except BaseException:
            # First failure under the "fail" policy cancels the remaining relays.
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        detail.replace_images(list(relayed))

        failed = sum(1 for r in relayed if r.relay_failed)
        task.stage("relay.stage", "relay_done", images=len(relayed), placeholders=failed)
        return detail

    async def load_bytes(self, ref: ImageRef) -> bytes:
        """Bytes behind an image's public URL (store read when the store owns it)."""
        url = ref.public_url
        data = await asyncio.to_thread(self.store.read, url)
        if data is not None:
            return data
        if not is_public_http_url(url):
            raise ValueError(f"refusing to fetch non-public image url: {redact_url(url)}")
        cookie = self.settings.cookie if is_allowed_image_host(url) else ""
        data, _ = await asyncio.to_thread(
            self._fetch, url, source_headers(self.settings, cookie, url=url), self.settings.relay_timeout_s
        )
        return data
