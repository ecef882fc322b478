"""Playwright browser session shared by the note extractors.

One Chromium process and one browser context per session. Identity (user agent,
headers, cookies, viewport) is fixed when the context is created. Extractors
either borrow the shared page (serialized through a lock) or open their own
page inside the context, which shares the cookie jar but isolates DOM state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional
from urllib.parse import urlparse

from app.core.config import Settings
from app.core.logger import redact_url
from app.domain.errors import NavigationError, NavigationTimeout

logger = logging.getLogger("xhs-draft-relay")

_LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-dev-shm-usage",
]


def cookie_header_to_playwright(cookie_header: str, domain: str = ".xiaohongshu.com") -> list[dict[str, Any]]:
    cookies: list[dict[str, Any]] = []
    for part in (cookie_header or "").split(";"):
        part = part.strip()
        if not part or "=" not in part:
            continue
        name, value = part.split("=", 1)
        name = name.strip()
        value = value.strip()
        if not name:
            continue
        cookies.append(
            {
                "name": name,
                "value": value,
                "domain": domain,
                "path": "/",
                "httpOnly": False,
                "secure": True,
                "sameSite": "Lax",
            }
        )
    return cookies


def cookies_to_header(cookies: list[dict[str, Any]]) -> str:
    """Convert Playwright cookie dicts to a stable Cookie header string."""
    now = time.time()
    out: list[str] = []
    for c in sorted(cookies or [], key=lambda x: str(x.get("name", ""))):
        name = str(c.get("name", "") or "").strip()
        value = str(c.get("value", "") or "").strip()
        if not name or value == "":
            continue

        expires = c.get("expires")
        if isinstance(expires, (int, float)) and expires not in (-1, 0):
            # Playwright uses -1 for session cookies.
            if expires > 0 and expires <= now:
                continue

        out.append(f"{name}={value}")
    return "; ".join(out).strip()


def should_block_request(resource_type: str, url: str, *, blocked_types, blocked_hosts) -> bool:
    if (resource_type or "").lower() in blocked_types:
        return True
    target = (urlparse(url or "").netloc + urlparse(url or "").path).lower()
    return any(marker and marker in target for marker in blocked_hosts)


def _cookie_domain(origin: str) -> str:
    host = (urlparse(origin).netloc or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return f".{host}" if host else ".xiaohongshu.com"


class BrowserSession:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None
        self._open_lock = asyncio.Lock()
        # Only one navigation/extraction on the shared page at a time.
        self._page_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._context is not None

    async def open(self) -> "BrowserSession":
        async with self._open_lock:
            if self._context is not None:
                return self

            try:
                from playwright.async_api import async_playwright
            except ModuleNotFoundError as exc:
                raise NavigationError(
                    "playwright is not installed (pip install playwright && playwright install chromium)",
                    status_code=502,
                ) from exc

            s = self.settings
            try:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=s.headless, args=_LAUNCH_ARGS)
                self._context = await self._browser.new_context(
                    user_agent=s.user_agent,
                    viewport={"width": s.viewport_width, "height": s.viewport_height},
                    locale="zh-CN",
                    extra_http_headers={
                        "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
                        "Referer": s.source_origin,
                    },
                )
                self._context.set_default_navigation_timeout(s.nav_timeout_ms)
                self._context.set_default_timeout(s.nav_timeout_ms)

                cookies = cookie_header_to_playwright(s.cookie, domain=_cookie_domain(s.source_origin))
                if cookies:
                    await self._context.add_cookies(cookies)

                if s.block_resource_types or s.block_host_markers:
                    await self._context.route("**/*", self._filter_route)
            except NavigationError:
                await self.close()
                raise
            except Exception as exc:
                await self.close()
                raise NavigationError(f"failed to start browser session: {exc}") from exc

            logger.info(
                "browser session opened (headless=%s cookie_len=%s blocked_types=%s)",
                s.headless,
                len(s.cookie),
                ",".join(s.block_resource_types),
            )
            return self

    async def _filter_route(self, route, request) -> None:
        if should_block_request(
            request.resource_type,
            request.url,
            blocked_types=self.settings.block_resource_types,
            blocked_hosts=self.settings.block_host_markers,
        ):
            await route.abort()
        else:
            await route.continue_()

    async def _shared_page(self):
        await self.open()
        if self._page is None or self._page.is_closed():
            self._page = await self._context.new_page()
        return self._page

    @asynccontextmanager
    async def page(self) -> AsyncIterator[Any]:
        """Independent page inside the shared context, closed on exit."""
        await self.open()
        page = await self._context.new_page()
        try:
            yield page
        finally:
            try:
                await page.close()
            except Exception:
                pass

    async def navigate(
        self,
        url: str,
        *,
        wait_until: str = "domcontentloaded",
        wait_for: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        page=None,
    ):
        """Load ``url`` and block until the wait condition holds.

        Without ``page`` the shared page is used and the call is serialized
        with every other shared-page navigation. Returns the page.
        """
        if page is not None:
            await self._goto(page, url, wait_until=wait_until, wait_for=wait_for, timeout_ms=timeout_ms)
            return page

        async with self._page_lock:
            shared = await self._shared_page()
            await self._goto(shared, url, wait_until=wait_until, wait_for=wait_for, timeout_ms=timeout_ms)
            return shared

    async def _goto(self, page, url: str, *, wait_until: str, wait_for: Optional[str], timeout_ms: Optional[int]) -> None:
        from playwright.async_api import Error as PlaywrightError
        from playwright.async_api import TimeoutError as PlaywrightTimeoutError

        timeout_ms = int(timeout_ms or self.settings.nav_timeout_ms)
        try:
            await page.goto(url, wait_until=wait_until, timeout=timeout_ms)
            if wait_for:
                await page.wait_for_selector(wait_for, timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeout(
                f"page did not satisfy '{wait_for or wait_until}' within {timeout_ms / 1000:.0f}s: {redact_url(url)}"
            ) from exc
        except PlaywrightError as exc:
            raise NavigationError(f"navigation failed for {redact_url(url)}: {exc}") from exc

    async def cookie_header(self) -> str:
        if self._context is None:
            return self.settings.cookie
        try:
            cookies = await self._context.cookies(self.settings.source_origin)
        except Exception:
            return self.settings.cookie
        return cookies_to_header(cookies) or self.settings.cookie

    async def close(self) -> None:
        page, ctx, browser, pw = self._page, self._context, self._browser, self._playwright
        self._page = self._context = self._browser = self._playwright = None

        for closer in (
            page.close if page is not None else None,
            ctx.close if ctx is not None else None,
            browser.close if browser is not None else None,
            pw.stop if pw is not None else None,
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as exc:
                logger.warning("browser session close step failed: %s", exc)
