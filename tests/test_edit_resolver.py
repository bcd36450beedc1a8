import sys
import unittest
from datetime import datetime, timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import playlist_app
from playlist_app import EditCase, Outcome, QueueEntry, Tier

BASE_TIME = datetime(2024, 5, 4, 20, 0, 0)


def _entry(entry_id: int, requester: str, tier: Tier = Tier.REGULAR, text: str = "song") -> QueueEntry:
    vip_at = BASE_TIME + timedelta(minutes=entry_id) if tier is not Tier.REGULAR else None
    return QueueEntry(
        id=entry_id,
        requester=requester,
        text=text,
        tier=tier,
        submitted_at=BASE_TIME + timedelta(minutes=entry_id),
        vip_at=vip_at,
        super_vip_at=vip_at if tier is Tier.SUPER_VIP else None,
    )


class ParseLeadingIndexTests(unittest.TestCase):
    def test_leading_integer_is_split_off(self) -> None:
        self.assertEqual(playlist_app.parse_leading_index("2 Artist - Song"), (2, "Artist - Song"))

    def test_zero_is_not_an_index(self) -> None:
        self.assertEqual(playlist_app.parse_leading_index("0 Artist - Song"), (None, "0 Artist - Song"))

    def test_text_without_index(self) -> None:
        self.assertEqual(playlist_app.parse_leading_index("  Artist - Song "), (None, "Artist - Song"))

    def test_index_only(self) -> None:
        self.assertEqual(playlist_app.parse_leading_index("3"), (3, ""))

    def test_number_glued_to_text_is_text(self) -> None:
        self.assertEqual(playlist_app.parse_leading_index("99problems"), (None, "99problems"))


class EditResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.resolver = playlist_app.EditResolver()

    def test_caller_without_requests(self) -> None:
        regular = [_entry(1, "bob")]
        resolution = self.resolver.resolve("alice", "new text", regular, [])

        self.assertEqual(resolution.case, EditCase.NO_REQUEST_IN_LIST)
        self.assertEqual(resolution.outcome, Outcome.NO_REQUEST_IN_LIST)

    def test_empty_text_after_index(self) -> None:
        resolution = self.resolver.resolve("alice", "3", [_entry(1, "alice")], [])

        self.assertEqual(resolution.case, EditCase.NO_REQUEST_PROVIDED)
        self.assertEqual(resolution.outcome, Outcome.NO_REQUEST_PROVIDED)

    def test_single_request_ignores_index(self) -> None:
        resolution = self.resolver.resolve("alice", "5 new text", [_entry(1, "alice")], [])

        self.assertEqual(resolution.case, EditCase.ONLY_REQUEST)
        self.assertEqual(resolution.outcome, Outcome.SUCCESS)
        self.assertEqual(resolution.target.id, 1)
        self.assertEqual(resolution.text, "new text")

    def test_single_vip_request_is_edited_without_index(self) -> None:
        vip = [_entry(2, "bob", Tier.VIP), _entry(3, "alice", Tier.VIP)]
        resolution = self.resolver.resolve("Alice", "other song", [], vip)

        self.assertEqual(resolution.case, EditCase.ONLY_REQUEST)
        self.assertEqual(resolution.target.id, 3)

    def test_two_vips_without_index_is_ambiguous(self) -> None:
        vip = [_entry(2, "alice", Tier.VIP), _entry(3, "alice", Tier.VIP)]
        resolution = self.resolver.resolve("alice", "other song", [], vip)

        self.assertEqual(resolution.case, EditCase.AMBIGUOUS_VIP)
        self.assertEqual(resolution.outcome, Outcome.ARGUMENT_ERROR)
        self.assertIsNone(resolution.target)

    def test_two_vips_with_listing_index(self) -> None:
        vip = [_entry(2, "bob", Tier.SUPER_VIP), _entry(3, "alice", Tier.VIP), _entry(4, "alice", Tier.VIP)]
        resolution = self.resolver.resolve("alice", "3 other song", [], vip)

        self.assertEqual(resolution.case, EditCase.VIP_BY_INDEX)
        self.assertEqual(resolution.target.id, 4)
        self.assertEqual(resolution.text, "other song")

    def test_index_pointing_at_someone_else(self) -> None:
        vip = [_entry(2, "bob", Tier.VIP), _entry(3, "alice", Tier.VIP), _entry(4, "alice", Tier.VIP)]
        resolution = self.resolver.resolve("alice", "1 other song", [], vip)

        self.assertEqual(resolution.case, EditCase.INDEX_NOT_OWNED)
        self.assertEqual(resolution.outcome, Outcome.ARGUMENT_ERROR)

    def test_index_without_any_vip(self) -> None:
        regular = [_entry(1, "alice"), _entry(2, "alice")]
        resolution = self.resolver.resolve("alice", "1 other song", regular, [])

        self.assertEqual(resolution.case, EditCase.INDEX_WITHOUT_VIP)
        self.assertEqual(resolution.outcome, Outcome.ARGUMENT_ERROR)

    def test_regular_wins_without_index(self) -> None:
        regular = [_entry(1, "alice")]
        vip = [_entry(2, "alice", Tier.VIP)]
        resolution = self.resolver.resolve("alice", "other song", regular, vip)

        self.assertEqual(resolution.case, EditCase.REGULAR)
        self.assertEqual(resolution.target.id, 1)

    def test_index_wins_over_regular(self) -> None:
        regular = [_entry(1, "alice")]
        vip = [_entry(2, "alice", Tier.VIP)]
        resolution = self.resolver.resolve("alice", "1 other song", regular, vip)

        self.assertEqual(resolution.case, EditCase.VIP_BY_INDEX)
        self.assertEqual(resolution.target.id, 2)

    def test_zero_index_keeps_text_for_single_request(self) -> None:
        resolution = self.resolver.resolve("alice", "0 Degrees - Song", [_entry(1, "alice")], [])

        self.assertEqual(resolution.text, "0 Degrees - Song")


if __name__ == "__main__":
    unittest.main()
