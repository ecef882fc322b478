import asyncio
import os
import time
import unittest
from unittest import mock

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from app.core.config import Settings
from app.core.logger import redact_url
from app.domain.errors import NavigationError, NavigationTimeout
from app.services.browser_session import (
    BrowserSession,
    cookie_header_to_playwright,
    cookies_to_header,
    should_block_request,
)

from fakes import fast_settings


class TestCookieHeader(unittest.TestCase):
    def test_cookie_header_sorted_and_filters_expired(self):
        now = time.time()
        cookies = [
            {"name": "b", "value": "2", "expires": -1},
            {"name": "a", "value": "1", "expires": now + 3600},
            {"name": "expired", "value": "x", "expires": now - 10},
        ]
        self.assertEqual(cookies_to_header(cookies), "a=1; b=2")

    def test_cookie_header_skips_empty(self):
        cookies = [
            {"name": "", "value": "1", "expires": -1},
            {"name": "a", "value": "", "expires": -1},
            {"name": "b", "value": "2", "expires": -1},
        ]
        self.assertEqual(cookies_to_header(cookies), "b=2")

    def test_header_to_playwright_cookies(self):
        cookies = cookie_header_to_playwright("web_session=abc=; a1=xyz ;broken; =v")
        self.assertEqual([(c["name"], c["value"]) for c in cookies], [("web_session", "abc="), ("a1", "xyz")])
        self.assertTrue(all(c["domain"] == ".xiaohongshu.com" and c["path"] == "/" for c in cookies))


class TestRequestFilter(unittest.TestCase):
    def setUp(self):
        s = Settings()
        self.kw = dict(blocked_types=s.block_resource_types, blocked_hosts=s.block_host_markers)

    def test_blocks_by_resource_type(self):
        self.assertTrue(should_block_request("font", "https://fe-static.xhscdn.com/x.woff2", **self.kw))
        self.assertFalse(should_block_request("image", "https://sns-webpic-qc.xhscdn.com/a.jpg", **self.kw))

    def test_blocks_tracking_hosts(self):
        self.assertTrue(should_block_request("xhr", "https://apm-fe.xiaohongshu.com/api/data", **self.kw))
        self.assertFalse(should_block_request("document", "https://www.xiaohongshu.com/explore/abc", **self.kw))


class TestSettings(unittest.TestCase):
    def test_from_env_reads_and_clamps(self):
        env = {
            "XHS_COOKIE": " a=1 ",
            "RELAY_MODE": "S3",
            "RELAY_PUBLIC_BASE_URL": "https://relay.example/",
            "RELAY_MAX_ATTEMPTS": "0",
            "RELAY_BACKOFF_S": "oops",
            "XHS_PLAYWRIGHT_HEADLESS": "false",
            "APP_ENV": "production",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            s = Settings.from_env()
        self.assertEqual(s.cookie, "a=1")
        self.assertEqual(s.relay_mode, "s3")
        self.assertEqual(s.relay_public_base_url, "https://relay.example")
        self.assertEqual(s.relay_max_attempts, 1)
        self.assertEqual(s.relay_backoff_s, 0.5)
        self.assertFalse(s.headless)
        self.assertTrue(s.production)
        self.assertFalse(s.wechat_configured)

    def test_secret_not_in_repr(self):
        self.assertNotIn("top-secret", repr(Settings(wechat_app_secret="top-secret")))


class TestRedact(unittest.TestCase):
    def test_tokens_redacted(self):
        url = "https://www.xiaohongshu.com/explore/abc?xsec_token=AB12&xsec_source=pc_user"
        self.assertEqual(
            redact_url(url), "https://www.xiaohongshu.com/explore/abc?xsec_token=<redacted>&xsec_source=pc_user"
        )
        self.assertIn("secret=<redacted>", redact_url("https://api.weixin.qq.com/cgi-bin/token?appid=x&secret=s3"))


class FakeBrowserPage:
    def __init__(self, error=None):
        self.error = error
        self.closed = False
        self.gotos: list[str] = []

    async def goto(self, url, **kwargs):
        self.gotos.append(url)
        if self.error is not None:
            raise self.error

    async def wait_for_selector(self, selector, **kwargs):
        return None

    async def close(self):
        self.closed = True

    def is_closed(self):
        return self.closed


class FakeContext:
    def __init__(self, page_error=None):
        self.page_error = page_error
        self.pages: list[FakeBrowserPage] = []
        self.cookies_added: list[dict] = []
        self.routes: list[str] = []
        self.closes = 0

    def set_default_navigation_timeout(self, ms):
        self.nav_timeout = ms

    def set_default_timeout(self, ms):
        self.timeout = ms

    async def add_cookies(self, cookies):
        self.cookies_added.extend(cookies)

    async def route(self, pattern, handler):
        self.routes.append(pattern)

    async def new_page(self):
        page = FakeBrowserPage(self.page_error)
        self.pages.append(page)
        return page

    async def cookies(self, url):
        return [{"name": "web_session", "value": "live", "expires": -1}]

    async def close(self):
        self.closes += 1


class FakeBrowser:
    def __init__(self, context):
        self.context = context
        self.context_kwargs: dict = {}
        self.closes = 0

    async def new_context(self, **kwargs):
        self.context_kwargs = kwargs
        return self.context

    async def close(self):
        self.closes += 1


class FakeChromium:
    def __init__(self, browser):
        self.browser = browser
        self.launches = 0

    async def launch(self, **kwargs):
        self.launches += 1
        await asyncio.sleep(0)
        return self.browser


class FakePlaywright:
    def __init__(self, context):
        self.chromium = FakeChromium(FakeBrowser(context))
        self.stops = 0

    async def start(self):
        return self

    async def stop(self):
        self.stops += 1


class TestBrowserSession(unittest.IsolatedAsyncioTestCase):
    def make(self, page_error=None):
        self.context = FakeContext(page_error)
        self.pw = FakePlaywright(self.context)
        patcher = mock.patch("playwright.async_api.async_playwright", lambda: self.pw)
        patcher.start()
        self.addCleanup(patcher.stop)
        return BrowserSession(fast_settings(cookie="web_session=abc; a1=xyz"))

    async def test_open_is_idempotent(self):
        session = self.make()

        await asyncio.gather(session.open(), session.open())
        await session.open()

        self.assertTrue(session.is_open)
        self.assertEqual(self.pw.chromium.launches, 1)
        self.assertEqual([c["name"] for c in self.context.cookies_added], ["web_session", "a1"])
        self.assertEqual(self.context.cookies_added[0]["domain"], ".xiaohongshu.com")
        self.assertEqual(self.context.routes, ["**/*"])
        self.assertEqual(self.pw.chromium.browser.context_kwargs["locale"], "zh-CN")

    async def test_close_twice_is_safe(self):
        session = self.make()
        await session.open()

        await session.close()
        await session.close()

        self.assertFalse(session.is_open)
        self.assertEqual((self.context.closes, self.pw.chromium.browser.closes, self.pw.stops), (1, 1, 1))

    async def test_timeout_maps_to_navigation_timeout_and_page_is_closed(self):
        session = self.make(page_error=PlaywrightTimeoutError("Timeout 30000ms exceeded."))
        with self.assertRaises(NavigationTimeout):
            async with session.page() as page:
                await session.navigate("https://www.xiaohongshu.com/explore/abc?xsec_token=T", page=page)
        self.assertTrue(self.context.pages[0].closed)

    async def test_browser_error_maps_to_navigation_error(self):
        session = self.make(page_error=PlaywrightError("net::ERR_CONNECTION_RESET"))
        with self.assertRaises(NavigationError) as ctx:
            await session.navigate("https://www.xiaohongshu.com/explore/abc")
        self.assertNotIsInstance(ctx.exception, NavigationTimeout)

    async def test_page_closed_when_caller_fails(self):
        session = self.make()
        with self.assertRaises(RuntimeError):
            async with session.page():
                raise RuntimeError("extraction blew up")
        self.assertTrue(self.context.pages[0].closed)

    async def test_cookie_header_reads_live_jar(self):
        session = self.make()
        self.assertEqual(await session.cookie_header(), "web_session=abc; a1=xyz")
        await session.open()
        self.assertEqual(await session.cookie_header(), "web_session=live")


if __name__ == "__main__":
    unittest.main()
