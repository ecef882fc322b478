import unittest

from app.domain.errors import ExtractionFailed
from app.services.note_detail import (
    build_detail,
    clean_content_text,
    clean_title,
    dedupe_image_urls,
    extract_detail,
    select_images,
)
from app.services.selectors import strip_query

from fakes import FakePage, FakeSession, fast_settings

CDN = "https://sns-webpic-qc.xhscdn.com/202410/1040g2sg31abc"


def probe(*, title=None, content=None, cover=None, carousel=None, fallback=None):
    """Probe result shaped like DETAIL_PROBE_JS output (one slot per cascade entry)."""
    return {
        "title": [title or "", "", "", ""],
        "content": [content or "", "", "", ""],
        "cover": [cover or "", ""],
        "images": [carousel or [], [], [], fallback or []],
    }


class TestContentCleanup(unittest.TestCase):
    def test_strips_emoji_placeholders_and_collapses_blank_lines(self):
        raw = "  第一行 [笑哭R] \n\n\n\n第二行[doge]\r\n\r\n\r\n  第三行  \n\n"
        self.assertEqual(clean_content_text(raw), "第一行\n\n第二行\n\n第三行")

    def test_drops_zero_width_chars(self):
        self.assertEqual(clean_content_text("a\u200bb\ufeff"), "ab")

    def test_bracketed_numbers_and_inner_spacing_survive(self):
        self.assertEqual(clean_content_text("  参考 [1] 和 [2024]  年  \n第二行[哭惹R]"), "参考 [1] 和 [2024]  年\n第二行")

    def test_title_suffix_removed(self):
        self.assertEqual(clean_title("周末去哪儿 - 小红书"), "周末去哪儿")


class TestImageSelection(unittest.TestCase):
    def test_dedupe_by_query_stripped_url_keeps_first_seen(self):
        urls = [
            f"{CDN}/a.jpg?imageView2/2/w/1080/format/webp",
            f"{CDN}/b.jpg",
            f"{CDN}/a.jpg?imageView2/2/w/540/format/jpg",
            f"//sns-webpic-qc.xhscdn.com/202410/1040g2sg31abc/b.jpg?v=2",
        ]
        out = dedupe_image_urls(urls)
        self.assertEqual(out, [urls[0], urls[1]])
        self.assertEqual(len({strip_query(u) for u in out}), len(out))

    def test_cover_excluded_from_body_even_when_in_carousel(self):
        cover, body = select_images(
            probe(
                cover=f"{CDN}/cover.jpg?x=1",
                carousel=[f"{CDN}/cover.jpg?x=2", f"{CDN}/b.jpg"],
            )
        )
        self.assertEqual(cover, f"{CDN}/cover.jpg?x=1")
        self.assertEqual(body, [f"{CDN}/b.jpg"])

    def test_fallback_filters_avatar_emoji_and_foreign_hosts(self):
        cover, body = select_images(
            probe(
                fallback=[
                    "https://sns-avatar-qc.xhscdn.com/avatar/1.jpg",
                    f"{CDN}/emoji/smile.png",
                    "https://example.com/not-cdn.jpg",
                    f"{CDN}/real.jpg",
                ]
            )
        )
        self.assertIsNone(cover)
        self.assertEqual(body, [f"{CDN}/real.jpg"])

    def test_carousel_wins_over_fallback(self):
        _, body = select_images(probe(carousel=[f"{CDN}/slide.jpg"], fallback=[f"{CDN}/other.jpg"]))
        self.assertEqual(body, [f"{CDN}/slide.jpg"])


class TestBuildDetail(unittest.TestCase):
    def test_first_matching_selector_wins(self):
        p = probe(title="标题A", content="正文")
        p["title"][2] = "标题B"
        detail = build_detail(p, source_url="https://www.xiaohongshu.com/explore/abc")
        self.assertEqual(detail.title, "标题A")

    def test_repeated_title_line_removed_from_content(self):
        detail = build_detail(probe(title="标题", content="标题\n正文"), source_url="u")
        self.assertEqual(detail.content, "正文")

    def test_nothing_matched_raises(self):
        with self.assertRaises(ExtractionFailed):
            build_detail(probe(), source_url="u")


class TestExtractDetail(unittest.IsolatedAsyncioTestCase):
    async def test_cover_plus_duplicate_carousel_end_to_end(self):
        page = FakePage(
            probes=[
                probe(
                    title="周末探店",
                    content="第一段\n\n\n\n第二段 [赞R]\n\n\n第三段",
                    cover=f"{CDN}/cover.jpg?imageView2/2/w/360",
                    carousel=[
                        f"{CDN}/a.jpg?imageView2/2/w/1080/format/webp",
                        f"{CDN}/a.jpg?imageView2/2/w/1080/format/jpg",
                        f"{CDN}/b.jpg?imageView2/2/w/1080/format/webp",
                    ],
                )
            ]
        )
        session = FakeSession(fast_settings(), page)
        url = "https://www.xiaohongshu.com/explore/66a1b2c3d4e5f6a7b8c9d0e1"

        detail = await extract_detail(session, url)

        self.assertEqual(session.navigations, [url])
        self.assertEqual(len(detail.images), 2)
        self.assertIsNotNone(detail.cover_image)
        self.assertEqual(detail.ordered_images()[0].original_url, f"{CDN}/cover.jpg?imageView2/2/w/360")
        self.assertEqual(detail.content, "第一段\n\n第二段\n\n第三段")
        self.assertTrue(page.closed)

    async def test_polls_until_content_ready(self):
        page = FakePage(probes=[probe(), probe(), probe(title="晚到的标题", content="正文")])
        session = FakeSession(fast_settings(content_wait_ms=60000), page)
        detail = await extract_detail(session, "https://www.xiaohongshu.com/explore/abc")
        self.assertEqual(detail.title, "晚到的标题")
        self.assertEqual(page.waits, 2)

    async def test_empty_page_fails(self):
        session = FakeSession(fast_settings(), FakePage(probes=[probe()]))
        with self.assertRaises(ExtractionFailed):
            await extract_detail(session, "https://www.xiaohongshu.com/explore/abc")


if __name__ == "__main__":
    unittest.main()
