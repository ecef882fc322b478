import unittest

from app.domain.errors import ExtractionEmpty
from app.services.note_list import STALL_LIMIT, list_notes, to_summary
from app.services.selectors import LIST_LAYOUTS

from fakes import FakeListing, FakePage, FakeSession, fast_settings

PROFILE = "https://www.xiaohongshu.com/user/profile/5f1e2d3c"


def card(i: int) -> dict:
    return {
        "id": f"note{i:04d}",
        "title": f"笔记 {i}",
        "summary": "",
        "cover": f"https://sns-webpic-qc.xhscdn.com/c{i}.jpg",
        "create_time": "",
        "link": f"/explore/note{i:04d}",
    }


class TestToSummary(unittest.TestCase):
    def test_id_derived_from_link(self):
        s = to_summary({"link": "/explore/66aa77bb"}, base_url=PROFILE)
        self.assertEqual(s.id, "66aa77bb")
        self.assertEqual(s.link, "https://www.xiaohongshu.com/explore/66aa77bb")

    def test_unidentifiable_node_dropped(self):
        self.assertIsNone(to_summary({"title": "no id", "link": "javascript:void(0)"}, base_url=PROFILE))


class TestListNotes(unittest.IsolatedAsyncioTestCase):
    async def test_scrolls_until_desired_count_and_truncates(self):
        listing = FakeListing(LIST_LAYOUTS[0].container, [card(i) for i in range(50)], initial=4, growth=lambda n: n + 4)
        session = FakeSession(fast_settings(), FakePage(listing=listing))

        notes = await list_notes(session, PROFILE, 10)

        self.assertEqual(len(notes), 10)
        self.assertEqual(notes[0].id, "note0000")
        self.assertEqual(listing.scrolls, 2)

    async def test_stall_detection_stops_scrolling(self):
        listing = FakeListing(LIST_LAYOUTS[0].container, [card(i) for i in range(3)], initial=3, growth=lambda n: n)
        session = FakeSession(fast_settings(), FakePage(listing=listing))

        notes = await list_notes(session, PROFILE, 20)

        self.assertEqual(len(notes), 3)
        self.assertEqual(listing.scrolls, STALL_LIMIT)

    async def test_unbounded_growth_still_terminates(self):
        listing = FakeListing(LIST_LAYOUTS[0].container, [card(i) for i in range(5)], initial=1, growth=lambda n: n + 1)
        session = FakeSession(fast_settings(max_scrolls=6), FakePage(listing=listing))

        notes = await list_notes(session, PROFILE, 1000)

        self.assertEqual(listing.scrolls, 6)
        self.assertLessEqual(len(notes), 1000)

    async def test_later_layout_used_when_first_absent(self):
        layout = LIST_LAYOUTS[1]
        listing = FakeListing(layout.container, [card(1), {"title": "broken"}, card(2)], initial=3, growth=lambda n: n)
        session = FakeSession(fast_settings(), FakePage(listing=listing))

        notes = await list_notes(session, PROFILE, 3)

        self.assertEqual([n.id for n in notes], ["note0001", "note0002"])

    async def test_no_layout_matches(self):
        listing = FakeListing(".does-not-exist", [], initial=0, growth=lambda n: n)
        session = FakeSession(fast_settings(), FakePage(listing=listing))
        with self.assertRaises(ExtractionEmpty):
            await list_notes(session, PROFILE, 5)

    async def test_zero_count_skips_navigation(self):
        session = FakeSession(fast_settings())
        self.assertEqual(await list_notes(session, PROFILE, 0), [])
        self.assertEqual(session.navigations, [])


if __name__ == "__main__":
    unittest.main()
