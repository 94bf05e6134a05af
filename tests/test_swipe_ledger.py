import threading
import unittest

from swipe_engine import (
    STATUS_MATCHED,
    STATUS_PENDING,
    STATUS_REJECTED,
    SwipeLedger,
    resolve_item_metadata,
)


class SwipeLedgerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ledger = SwipeLedger()

    def _swipe(self, item_id: str, user_id: str, partner_id: str, interested: bool = True, **extra):
        return self.ledger.record_interest(
            item_id=item_id,
            user_id=user_id,
            interested=interested,
            partner_id=partner_id,
            **extra,
        )

    def test_one_sided_interest_never_matches(self) -> None:
        for interested in (True, False):
            res = self._swipe("item-solo", "alice", "bob", interested=interested)
            self.assertEqual(res.status, STATUS_PENDING)
            self.assertFalse(res.matched)
        self.assertTrue(self.ledger.has_item("item-solo"))

    def test_mutual_interest_matches_once_and_retires_item(self) -> None:
        first = self._swipe("item1", "A", "B", push_address="pA", item_type="movies", title="X")
        self.assertEqual(first.status, STATUS_PENDING)
        self.assertIsNotNone(self.ledger.get_record("item1", "A"))

        second = self._swipe("item1", "B", "A", push_address="pB", item_type="movies", title="X")
        self.assertEqual(second.status, STATUS_MATCHED)
        self.assertEqual(second.item_id, "item1")
        self.assertEqual(second.record.user_id, "B")
        self.assertEqual(second.partner_record.user_id, "A")
        self.assertEqual(second.partner_record.push_address, "pA")
        self.assertEqual(second.item.title, "X")
        self.assertFalse(self.ledger.has_item("item1"))

        repeat = self._swipe("item1", "B", "A", item_type="movies", title="X")
        self.assertEqual(repeat.status, STATUS_PENDING)

    def test_match_in_reverse_order(self) -> None:
        self.assertEqual(self._swipe("item-r", "B", "A").status, STATUS_PENDING)
        self.assertEqual(self._swipe("item-r", "A", "B").status, STATUS_MATCHED)

    def test_last_write_wins_for_same_user(self) -> None:
        self._swipe("item-lw", "A", "B", interested=False)
        self._swipe("item-lw", "A", "B", interested=True)
        self.assertTrue(self.ledger.get_record("item-lw", "A").interested)
        self.assertEqual(self._swipe("item-lw", "B", "A").status, STATUS_MATCHED)

    def test_partner_not_interested_keeps_both_records(self) -> None:
        self._swipe("item2", "A", "B", interested=False)
        res = self._swipe("item2", "B", "A", interested=True)
        self.assertEqual(res.status, STATUS_PENDING)
        self.assertFalse(self.ledger.get_record("item2", "A").interested)
        self.assertTrue(self.ledger.get_record("item2", "B").interested)

    def test_linkage_checked_only_from_current_swipe(self) -> None:
        # carol named dave, but alice naming carol still matches.
        self._swipe("item-link", "carol", "dave")
        res = self._swipe("item-link", "alice", "carol")
        self.assertEqual(res.status, STATUS_MATCHED)

    def test_match_purges_third_party_records(self) -> None:
        self._swipe("item-3p", "eve", "frank")
        self._swipe("item-3p", "A", "B")
        self._swipe("item-3p", "B", "A")
        self.assertIsNone(self.ledger.get_record("item-3p", "eve"))
        self.assertFalse(self.ledger.has_item("item-3p"))

    def test_missing_identifiers_are_rejected_without_state_change(self) -> None:
        cases = [
            {"item_id": "", "user_id": "A", "partner_id": "B"},
            {"item_id": "item-x", "user_id": None, "partner_id": "B"},
            {"item_id": "item-x", "user_id": "A", "partner_id": "  "},
        ]
        for case in cases:
            res = self.ledger.record_interest(interested=True, **case)
            self.assertEqual(res.status, STATUS_REJECTED)
        self.assertEqual(self.ledger.pending_items(), 0)

    def test_numeric_identifiers_are_normalized(self) -> None:
        self.ledger.record_interest(item_id=42, user_id=1, partner_id=2, interested=True)
        res = self.ledger.record_interest(item_id="42", user_id="2", partner_id="1", interested=True)
        self.assertEqual(res.status, STATUS_MATCHED)

    def test_concurrent_swipes_match_at_most_once(self) -> None:
        rounds = 50
        results: list[str] = []
        results_lock = threading.Lock()

        def swipe(item_id: str, user_id: str, partner_id: str, barrier: threading.Barrier) -> None:
            barrier.wait()
            res = self._swipe(item_id, user_id, partner_id)
            with results_lock:
                results.append(res.status)

        for i in range(rounds):
            barrier = threading.Barrier(2)
            threads = [
                threading.Thread(target=swipe, args=(f"race-{i}", "A", "B", barrier)),
                threading.Thread(target=swipe, args=(f"race-{i}", "B", "A", barrier)),
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        self.assertEqual(results.count(STATUS_MATCHED), rounds)
        self.assertEqual(results.count(STATUS_PENDING), rounds)
        self.assertEqual(self.ledger.pending_items(), 0)


class ItemMetadataTests(unittest.TestCase):
    def test_known_category_uses_payload_title(self) -> None:
        meta = resolve_item_metadata("shows", "Dark", "https://img.example/dark.jpg")
        self.assertEqual(meta.title, "Dark")
        self.assertEqual(meta.image, "https://img.example/dark.jpg")

    def test_known_category_falls_back_to_label(self) -> None:
        expected = {
            "movies": "Unknown Movie",
            "shows": "Unknown Show",
            "places": "Unknown Place",
            "restaurants": "Unknown Restaurant",
            "recipes": "Unknown Recipe",
        }
        for item_type, label in expected.items():
            meta = resolve_item_metadata(item_type, None, None)
            self.assertEqual(meta.title, label)
            self.assertEqual(meta.image, "")

    def test_unknown_category_matches_with_empty_labels(self) -> None:
        with self.assertLogs("coupleswipe.match", level="ERROR"):
            meta = resolve_item_metadata("books", "Dune", "x.jpg")
        self.assertEqual(meta.title, "")
        self.assertEqual(meta.image, "")

        ledger = SwipeLedger()
        ledger.record_interest(item_id="b1", user_id="A", partner_id="B", interested=True, item_type="books")
        with self.assertLogs("coupleswipe.match", level="ERROR"):
            res = ledger.record_interest(item_id="b1", user_id="B", partner_id="A", interested=True, item_type="books")
        self.assertTrue(res.matched)
        self.assertEqual(res.item.item_type, "books")


if __name__ == "__main__":
    unittest.main()
