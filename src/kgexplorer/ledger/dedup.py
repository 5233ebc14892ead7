from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator

from . import sqlite_ledger
from .models import Entity, Fragment


logger = logging.getLogger(__name__)


class DeduplicationService:
    """Curation operations over the entity/keyword ledger.

    Every mutation is one unit of work on the injected connection: it commits on
    success and rolls back if the store raises. Success is reported as a boolean
    derived from affected-row counts, so a partially applied batch reports the
    same ``False`` as one that changed nothing.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @contextmanager
    def _unit_of_work(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self.conn
        except BaseException:
            self.conn.rollback()
            raise
        self.conn.commit()

    # -- lookups -------------------------------------------------------------

    def get_by_ids(self, ids: list[int]) -> list[Entity]:
        return [Entity.from_row(r) for r in sqlite_ledger.get_entities_by_ids(self.conn, list(ids))]

    def get_name_and_type(self, name: str, type: str) -> list[Entity]:
        return [Entity.from_row(r) for r in sqlite_ledger.get_entities_by_name_and_type(self.conn, name, type)]

    def get_blacklisted(self) -> list[Entity]:
        return [Entity.from_row(r) for r in sqlite_ledger.get_blacklisted(self.conn)]

    def get_blacklisted_keywords(self) -> list[str]:
        return sqlite_ledger.get_blacklisted_keywords(self.conn)

    def get_types(self) -> dict[str, int]:
        """Map each visible entity type to a small integer.

        The numbering is positional over the sorted types currently present, so
        it shifts when types appear or disappear. Do not persist it.
        """
        return {t: i for i, t in enumerate(sqlite_ledger.get_types(self.conn))}

    def get_entity_fragments(self, doc_id: int) -> list[tuple[Entity, Fragment]]:
        return self._fragments(doc_id, blacklisted=False)

    def get_blacklist_fragments(self, doc_id: int) -> list[tuple[Entity, Fragment]]:
        return self._fragments(doc_id, blacklisted=True)

    def _fragments(self, doc_id: int, *, blacklisted: bool) -> list[tuple[Entity, Fragment]]:
        rows = sqlite_ledger.get_fragments(self.conn, doc_id, blacklisted=blacklisted)
        return [(Entity.from_row(r), Fragment(int(r["entitystart"]), int(r["entityend"]))) for r in rows]

    # -- blacklist -----------------------------------------------------------

    def blacklist(self, ids: list[int]) -> bool:
        wanted = set(int(i) for i in ids)
        with self._unit_of_work() as conn:
            n = sqlite_ledger.set_blacklisted(conn, sorted(wanted), True)
        logger.info("Blacklisted %d/%d entities", n, len(wanted))
        return n == len(wanted)

    def undo_blacklist(self, ids: list[int]) -> bool:
        wanted = set(int(i) for i in ids)
        with self._unit_of_work() as conn:
            n = sqlite_ledger.set_blacklisted(conn, sorted(wanted), False)
            # A visible entity can no longer be somebody's duplicate.
            purged = sqlite_ledger.delete_duplicates_of(conn, sorted(wanted))
        logger.info("Restored %d/%d entities (%d merge records dropped)", n, len(wanted), purged)
        return n == len(wanted)

    def blacklist_keyword(self, term: str) -> bool:
        with self._unit_of_work() as conn:
            sqlite_ledger.insert_blacklisted_keyword(conn, term)
        logger.info("Blacklisted keyword %r", term)
        return True

    # -- merge ---------------------------------------------------------------

    def merge(self, focal_id: int, duplicate_ids: list[int]) -> bool:
        """Record each duplicate under ``focal_id`` and hide it.

        Steps commit one by one; a failing duplicate leaves the earlier ones merged.
        """
        results = []
        for dup in duplicate_ids:
            with self._unit_of_work() as conn:
                sqlite_ledger.insert_duplicate(conn, duplicate_id=dup, focal_id=focal_id)
                n = sqlite_ledger.set_blacklisted(conn, [dup], True)
            results.append(n == 1)
        ok = len(results) == len(duplicate_ids) and all(results)
        logger.info("Merged %d duplicates into entity %d (ok=%s)", sum(results), int(focal_id), ok)
        return ok

    def undo_merge(self, focal_ids: list[int]) -> bool:
        focals = [int(i) for i in focal_ids]
        with self._unit_of_work() as conn:
            restored = sqlite_ledger.unblacklist_duplicates_for_focals(conn, focals)
            removed = sqlite_ledger.delete_duplicates_for_focals(conn, focals)
        logger.info("Undid merges for %d focals: %d restored, %d records removed", len(focals), restored, removed)
        return True

    def merge_keywords(self, focal: str, duplicates: list[str]) -> bool:
        # Blacklisting a keyword is idempotent, so every step succeeds.
        for term in duplicates:
            with self._unit_of_work() as conn:
                sqlite_ledger.insert_duplicate_keyword(conn, duplicate=term, focal=focal)
                sqlite_ledger.insert_blacklisted_keyword(conn, term)
        logger.info("Merged %d keywords into %r", len(duplicates), focal)
        return True

    def undo_merge_keywords(self, focals: list[str]) -> bool:
        """Drop the merge records of ``focals[0]`` and un-blacklist ``focals[1:]``.

        The first term keeps its own blacklist entry.
        """
        if not focals:
            return True
        head, rest = focals[0], focals[1:]
        with self._unit_of_work() as conn:
            sqlite_ledger.delete_duplicate_keywords_for_focal(conn, head)
            for term in rest:
                sqlite_ledger.delete_blacklisted_keyword(conn, term)
        logger.info("Undid keyword merge for %r (%d terms restored)", head, len(rest))
        return True

    def get_merged(self) -> dict[Entity, list[Entity]]:
        result: dict[Entity, list[Entity]] = {}
        for r in sqlite_ledger.get_duplicate_pairs(self.conn):
            focal = Entity(
                id=int(r["focal_id"]),
                name=str(r["focal_name"]),
                type=str(r["focal_type"]),
                frequency=int(r["focal_frequency"]),
                blacklisted=bool(r["focal_isblacklisted"]),
            )
            result.setdefault(focal, []).append(Entity.from_row(r))

        for focal, dups in self.get_merged_keywords().items():
            result[Entity.keyword(focal)] = [Entity.keyword(d) for d in dups]
        return result

    def get_merged_keywords(self) -> dict[str, list[str]]:
        groups: dict[str, list[str]] = {}
        for rec in sqlite_ledger.iter_duplicate_keywords(self.conn):
            dups = groups.setdefault(str(rec.focal), [])
            if rec.duplicate not in dups:
                dups.append(str(rec.duplicate))
        return groups

    # -- edits ---------------------------------------------------------------

    def change_name(self, entity_id: int, new_name: str) -> bool:
        with self._unit_of_work() as conn:
            n = sqlite_ledger.update_name(conn, entity_id, new_name)
        return n == 1

    def change_type(self, entity_id: int, new_type: str) -> bool:
        with self._unit_of_work() as conn:
            n = sqlite_ledger.update_type(conn, entity_id, new_type)
        return n == 1

    def whitelist(self, text: str, start: int, end: int, type: str, doc_id: int) -> Entity:
        """Promote a raw span to a new entity and point the span at it."""
        with self._unit_of_work() as conn:
            eid = sqlite_ledger.insert_entity(conn, name=text, type=type, frequency=1)
            replaced = sqlite_ledger.delete_fragment(conn, doc_id=doc_id, start=start, end=end)
            sqlite_ledger.insert_fragment(conn, doc_id=doc_id, entity_id=eid, start=start, end=end)
        logger.info("Whitelisted %r as entity %d in doc %d (replaced %d fragments)", text, eid, int(doc_id), replaced)
        return Entity(id=eid, name=text, type=type, frequency=1)

    def update_frequency(self, text: str, start: int, end: int, type: str, entity_id: int, doc_id: int) -> bool:
        with self._unit_of_work() as conn:
            n = sqlite_ledger.bump_frequency(conn, entity_id)
            if n == 1:
                sqlite_ledger.insert_fragment(conn, doc_id=doc_id, entity_id=entity_id, start=start, end=end)
        if n != 1:
            logger.info("No entity %d to annotate with %r", int(entity_id), text)
        return n == 1
