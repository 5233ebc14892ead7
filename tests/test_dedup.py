import sqlite3
import unittest

from kgexplorer.ledger import sqlite_ledger
from kgexplorer.ledger.dedup import DeduplicationService
from kgexplorer.ledger.models import KEYWORD_ENTITY_ID, KEYWORD_TYPE, Entity, Fragment


def _ledger() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    sqlite_ledger.init_ledger(conn)
    return conn


class LedgerTestCase(unittest.TestCase):
    def setUp(self):
        self.conn = _ledger()
        self.svc = DeduplicationService(self.conn)

    def tearDown(self):
        self.conn.close()

    def add(self, name: str, type: str = "PERSON", frequency: int = 1) -> int:
        eid = sqlite_ledger.insert_entity(self.conn, name=name, type=type, frequency=frequency)
        self.conn.commit()
        return eid


class TestBlacklist(LedgerTestCase):
    def test_blacklist_then_undo_restores_entity_unchanged(self):
        a = self.add("Angela Merkel", frequency=12)
        b = self.add("Berlin", type="LOCATION", frequency=3)

        self.assertTrue(self.svc.blacklist([a, b]))
        self.assertEqual(self.svc.get_by_ids([a, b]), [])
        self.assertEqual({e.id for e in self.svc.get_blacklisted()}, {a, b})

        self.assertTrue(self.svc.undo_blacklist([a, b]))
        restored = self.svc.get_by_ids([a, b])
        self.assertEqual(
            restored,
            [
                Entity(a, "Angela Merkel", "PERSON", 12),
                Entity(b, "Berlin", "LOCATION", 3),
            ],
        )
        self.assertEqual(self.svc.get_blacklisted(), [])

    def test_blacklist_reports_failure_when_an_id_is_missing(self):
        a = self.add("Angela Merkel")
        self.assertFalse(self.svc.blacklist([a, 999]))
        # The existing row was still flagged; failure does not mean rollback.
        self.assertEqual([e.id for e in self.svc.get_blacklisted()], [a])

    def test_blacklist_empty_list_succeeds(self):
        self.assertTrue(self.svc.blacklist([]))

    def test_undo_blacklist_drops_merge_record(self):
        focal = self.add("Angela Merkel")
        dup = self.add("Merkel")
        self.assertTrue(self.svc.merge(focal, [dup]))

        self.assertTrue(self.svc.undo_blacklist([dup]))
        self.assertEqual(self.svc.get_merged(), {})

    def test_blacklist_keyword_is_idempotent(self):
        self.assertTrue(self.svc.blacklist_keyword("the"))
        self.assertTrue(self.svc.blacklist_keyword("the"))
        self.assertEqual(self.svc.get_blacklisted_keywords(), ["the"])
        row = self.conn.execute("SELECT type FROM blacklistedkeywords WHERE term = 'the'").fetchone()
        self.assertEqual(row["type"], KEYWORD_TYPE)


class TestMerge(LedgerTestCase):
    def test_merge_hides_duplicates_and_groups_them_under_focal(self):
        focal = self.add("Angela Merkel", frequency=10)
        d1 = self.add("Merkel", frequency=4)
        d2 = self.add("A. Merkel", frequency=2)

        self.assertTrue(self.svc.merge(focal, [d1, d2]))

        blacklisted = {e.id for e in self.svc.get_blacklisted()}
        self.assertEqual(blacklisted, {d1, d2})

        merged = self.svc.get_merged()
        self.assertEqual(len(merged), 1)
        (key, dups), = merged.items()
        self.assertEqual(key.id, focal)
        self.assertEqual([d.id for d in dups], [d1, d2])
        self.assertTrue(all(d.blacklisted for d in dups))

    def test_undo_merge_restores_duplicates(self):
        focal = self.add("Angela Merkel")
        d1 = self.add("Merkel")
        d2 = self.add("A. Merkel")
        self.svc.merge(focal, [d1, d2])

        self.assertTrue(self.svc.undo_merge([focal]))
        self.assertEqual(self.svc.get_blacklisted(), [])
        self.assertEqual(self.svc.get_merged(), {})
        self.assertEqual(len(self.svc.get_by_ids([d1, d2])), 2)

    def test_undo_merge_by_duplicate_id_changes_nothing(self):
        focal = self.add("Angela Merkel")
        dup = self.add("Merkel")
        self.svc.merge(focal, [dup])

        self.svc.undo_merge([dup])
        self.assertEqual([e.id for e in self.svc.get_blacklisted()], [dup])
        self.assertEqual(len(self.svc.get_merged()), 1)

    def test_merge_keeps_applied_steps_when_a_later_one_fails(self):
        focal = self.add("Angela Merkel")
        dup = self.add("Merkel")

        self.assertFalse(self.svc.merge(focal, [dup, 4242]))
        self.assertEqual([e.id for e in self.svc.get_blacklisted()], [dup])

    def test_merge_is_single_level(self):
        a = self.add("Angela Merkel")
        b = self.add("Merkel")
        c = self.add("Mrs Merkel")
        self.svc.merge(b, [c])
        self.svc.merge(a, [b])

        merged = {k.id: [d.id for d in v] for k, v in self.svc.get_merged().items()}
        self.assertEqual(merged, {b: [c], a: [b]})


class TestKeywordMerge(LedgerTestCase):
    def test_merged_keywords_grouped_without_repeats(self):
        self.svc.merge_keywords("Merkel", ["merkel"])
        self.svc.merge_keywords("Merkel", ["Mutti", "merkel"])

        self.assertEqual(self.svc.get_merged_keywords(), {"Merkel": ["merkel", "Mutti"]})

    def test_merge_keywords_blacklists_duplicates(self):
        self.assertTrue(self.svc.merge_keywords("Merkel", ["merkel", "Mutti"]))
        self.assertEqual(self.svc.get_blacklisted_keywords(), ["merkel", "Mutti"])

    def test_undo_merge_keywords_keeps_first_term_blacklisted(self):
        self.svc.blacklist_keyword("Merkel")
        self.svc.merge_keywords("Merkel", ["merkel", "Mutti"])

        self.assertTrue(self.svc.undo_merge_keywords(["Merkel", "merkel"]))

        self.assertEqual(self.svc.get_merged_keywords(), {})
        self.assertEqual(self.svc.get_blacklisted_keywords(), ["Merkel", "Mutti"])

    def test_get_merged_includes_keyword_groups(self):
        focal = self.add("Angela Merkel")
        dup = self.add("Merkel")
        self.svc.merge(focal, [dup])
        self.svc.merge_keywords("climate", ["Climate", "climates"])

        merged = self.svc.get_merged()
        keyword_focal = Entity.keyword("climate")
        self.assertIn(keyword_focal, merged)
        self.assertEqual(keyword_focal.id, KEYWORD_ENTITY_ID)
        self.assertEqual([d.name for d in merged[keyword_focal]], ["Climate", "climates"])
        self.assertTrue(all(d.type == KEYWORD_TYPE for d in merged[keyword_focal]))
        self.assertEqual(len(merged), 2)


class TestEdits(LedgerTestCase):
    def test_change_name_and_type(self):
        a = self.add("Merkl")
        self.assertTrue(self.svc.change_name(a, "Merkel"))
        self.assertTrue(self.svc.change_type(a, "ORGANIZATION"))
        self.assertEqual(self.svc.get_by_ids([a]), [Entity(a, "Merkel", "ORGANIZATION", 1)])

    def test_change_name_of_missing_entity_fails(self):
        self.assertFalse(self.svc.change_name(77, "Nobody"))
        self.assertFalse(self.svc.change_type(77, "PERSON"))

    def test_whitelist_on_empty_table(self):
        ent = self.svc.whitelist("Angela", 10, 16, "PERSON", 42)
        self.assertEqual(ent.id, 1)

        rows = self.conn.execute("SELECT docid, entid, entitystart, entityend FROM entityoffset").fetchall()
        self.assertEqual([tuple(r) for r in rows], [(42, 1, 10, 16)])

        second = self.svc.whitelist("Angela Merkel", 10, 16, "PERSON", 42)
        self.assertEqual(second.id, 2)
        rows = self.conn.execute("SELECT docid, entid, entitystart, entityend FROM entityoffset").fetchall()
        self.assertEqual([tuple(r) for r in rows], [(42, 2, 10, 16)])

    def test_whitelist_ids_increase_past_existing(self):
        sqlite_ledger.insert_entity(self.conn, name="Upstream", type="PERSON", entity_id=40)
        self.conn.commit()
        self.assertEqual(self.svc.whitelist("Scholz", 0, 6, "PERSON", 1).id, 41)

    def test_update_frequency_appends_fragments(self):
        a = self.add("Merkel", frequency=3)

        self.assertTrue(self.svc.update_frequency("Merkel", 5, 11, "PERSON", a, 7))
        self.assertTrue(self.svc.update_frequency("Merkel", 5, 11, "PERSON", a, 7))

        self.assertEqual(self.svc.get_by_ids([a])[0].frequency, 5)
        frags = self.svc.get_entity_fragments(7)
        self.assertEqual([f for _, f in frags], [Fragment(5, 11), Fragment(5, 11)])

    def test_update_frequency_of_missing_entity_fails(self):
        self.assertFalse(self.svc.update_frequency("Ghost", 0, 5, "PERSON", 99, 7))
        self.assertEqual(self.svc.get_entity_fragments(7), [])


class TestListings(LedgerTestCase):
    def test_fragments_split_by_blacklist_state(self):
        a = self.add("Merkel")
        b = self.add("Berlin", type="LOCATION")
        for eid, start, end in [(a, 0, 6), (b, 20, 26)]:
            sqlite_ledger.insert_fragment(self.conn, doc_id=3, entity_id=eid, start=start, end=end)
        self.conn.commit()
        self.svc.blacklist([b])

        visible = self.svc.get_entity_fragments(3)
        hidden = self.svc.get_blacklist_fragments(3)
        self.assertEqual([(e.id, f) for e, f in visible], [(a, Fragment(0, 6))])
        self.assertEqual([(e.id, f) for e, f in hidden], [(b, Fragment(20, 26))])
        self.assertTrue(hidden[0][0].blacklisted)

    def test_get_types_skips_blacklisted(self):
        self.add("Merkel")
        loc = self.add("Berlin", type="LOCATION")
        self.add("SPD", type="ORGANIZATION")

        self.assertEqual(self.svc.get_types(), {"LOCATION": 0, "ORGANIZATION": 1, "PERSON": 2})
        self.svc.blacklist([loc])
        self.assertEqual(self.svc.get_types(), {"ORGANIZATION": 0, "PERSON": 1})

    def test_get_name_and_type(self):
        a = self.add("Merkel", frequency=2)
        b = self.add("Merkel", frequency=9)
        self.add("Merkel", type="ORGANIZATION")

        self.assertEqual([e.id for e in self.svc.get_name_and_type("Merkel", "PERSON")], [b, a])


if __name__ == "__main__":
    unittest.main()
