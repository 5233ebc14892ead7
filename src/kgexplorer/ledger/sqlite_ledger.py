from __future__ import annotations

import os
import sqlite3
from pathlib import Path
from typing import Iterable

from .models import KEYWORD_TYPE, DuplicateRecord


def connect(db_path: str | os.PathLike[str]) -> sqlite3.Connection:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    # Gateways open one connection per aggregation call from worker threads.
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def init_ledger(conn: sqlite3.Connection) -> None:
    # AUTOINCREMENT keeps ids strictly increasing and never reused.
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS entity (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name TEXT NOT NULL,
          type TEXT NOT NULL,
          frequency INTEGER NOT NULL DEFAULT 1,
          isblacklisted INTEGER NOT NULL DEFAULT 0
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_entity_type ON entity(type);")

    # Fragment index; the same span may be stored more than once.
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS entityoffset (
          docid INTEGER NOT NULL,
          entid INTEGER NOT NULL,
          entitystart INTEGER NOT NULL,
          entityend INTEGER NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_entityoffset_doc ON entityoffset(docid);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS duplicates (
          duplicateid INTEGER NOT NULL,
          focalid INTEGER NOT NULL,
          PRIMARY KEY (duplicateid, focalid)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_duplicates_focal ON duplicates(focalid);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS duplicatekeywords (
          duplicate TEXT NOT NULL,
          focal TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS blacklistedkeywords (
          term TEXT PRIMARY KEY,
          type TEXT NOT NULL
        );
        """
    )
    conn.commit()


def _placeholders(values: list) -> str:
    return ",".join(["?"] * len(values))


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


def insert_entity(
    conn: sqlite3.Connection,
    *,
    name: str,
    type: str,
    frequency: int = 1,
    entity_id: int | None = None,
) -> int:
    if entity_id is None:
        cur = conn.execute(
            "INSERT INTO entity(name, type, frequency) VALUES(?, ?, ?)",
            (name, type, int(frequency)),
        )
    else:
        cur = conn.execute(
            "INSERT INTO entity(id, name, type, frequency) VALUES(?, ?, ?, ?)",
            (int(entity_id), name, type, int(frequency)),
        )
    return int(cur.lastrowid)


def get_entities_by_ids(conn: sqlite3.Connection, ids: list[int]) -> list[sqlite3.Row]:
    if not ids:
        return []
    return conn.execute(
        f"""
        SELECT id, name, type, frequency, isblacklisted FROM entity
        WHERE id IN ({_placeholders(ids)}) AND NOT isblacklisted
        ORDER BY frequency DESC, id
        """,
        [int(i) for i in ids],
    ).fetchall()


def get_entities_by_name_and_type(conn: sqlite3.Connection, name: str, type: str) -> list[sqlite3.Row]:
    return conn.execute(
        """
        SELECT id, name, type, frequency, isblacklisted FROM entity
        WHERE name = ? AND type = ? AND NOT isblacklisted
        ORDER BY frequency DESC, id
        """,
        (name, type),
    ).fetchall()


def set_blacklisted(conn: sqlite3.Connection, ids: list[int], flag: bool) -> int:
    """Return the number of entity rows touched."""
    if not ids:
        return 0
    cur = conn.execute(
        f"UPDATE entity SET isblacklisted = ? WHERE id IN ({_placeholders(ids)})",
        [1 if flag else 0, *[int(i) for i in ids]],
    )
    return int(cur.rowcount)


def update_name(conn: sqlite3.Connection, entity_id: int, name: str) -> int:
    cur = conn.execute("UPDATE entity SET name = ? WHERE id = ?", (name, int(entity_id)))
    return int(cur.rowcount)


def update_type(conn: sqlite3.Connection, entity_id: int, type: str) -> int:
    cur = conn.execute("UPDATE entity SET type = ? WHERE id = ?", (type, int(entity_id)))
    return int(cur.rowcount)


def bump_frequency(conn: sqlite3.Connection, entity_id: int) -> int:
    eid = int(entity_id)
    cur = conn.execute(
        """
        UPDATE entity
        SET frequency = (SELECT coalesce(max(frequency), 0) + 1 FROM entity WHERE id = ?)
        WHERE id = ?
        """,
        (eid, eid),
    )
    return int(cur.rowcount)


def get_blacklisted(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT id, name, type, frequency, isblacklisted FROM entity WHERE isblacklisted ORDER BY id"
    ).fetchall()


def get_types(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute("SELECT DISTINCT type FROM entity WHERE NOT isblacklisted ORDER BY type").fetchall()
    return [str(r["type"]) for r in rows]


# ---------------------------------------------------------------------------
# Fragments
# ---------------------------------------------------------------------------


def delete_fragment(conn: sqlite3.Connection, *, doc_id: int, start: int, end: int) -> int:
    cur = conn.execute(
        "DELETE FROM entityoffset WHERE docid = ? AND entitystart = ? AND entityend = ?",
        (int(doc_id), int(start), int(end)),
    )
    return int(cur.rowcount)


def insert_fragment(conn: sqlite3.Connection, *, doc_id: int, entity_id: int, start: int, end: int) -> None:
    conn.execute(
        "INSERT INTO entityoffset(docid, entid, entitystart, entityend) VALUES(?, ?, ?, ?)",
        (int(doc_id), int(entity_id), int(start), int(end)),
    )


def get_fragments(conn: sqlite3.Connection, doc_id: int, *, blacklisted: bool) -> list[sqlite3.Row]:
    return conn.execute(
        """
        SELECT o.entid AS id, e.name, e.type, e.frequency, e.isblacklisted,
               o.entitystart, o.entityend
        FROM entityoffset o
        JOIN entity e ON e.id = o.entid
        WHERE o.docid = ? AND e.isblacklisted = ?
        ORDER BY o.entitystart, o.entityend
        """,
        (int(doc_id), 1 if blacklisted else 0),
    ).fetchall()


# ---------------------------------------------------------------------------
# Entity duplicates
# ---------------------------------------------------------------------------


def insert_duplicate(conn: sqlite3.Connection, *, duplicate_id: int, focal_id: int) -> int:
    cur = conn.execute(
        "INSERT OR IGNORE INTO duplicates(duplicateid, focalid) VALUES(?, ?)",
        (int(duplicate_id), int(focal_id)),
    )
    return int(cur.rowcount)


def delete_duplicates_of(conn: sqlite3.Connection, duplicate_ids: list[int]) -> int:
    if not duplicate_ids:
        return 0
    cur = conn.execute(
        f"DELETE FROM duplicates WHERE duplicateid IN ({_placeholders(duplicate_ids)})",
        [int(i) for i in duplicate_ids],
    )
    return int(cur.rowcount)


def unblacklist_duplicates_for_focals(conn: sqlite3.Connection, focal_ids: list[int]) -> int:
    if not focal_ids:
        return 0
    cur = conn.execute(
        f"""
        UPDATE entity SET isblacklisted = 0
        WHERE id IN (SELECT duplicateid FROM duplicates WHERE focalid IN ({_placeholders(focal_ids)}))
        """,
        [int(i) for i in focal_ids],
    )
    return int(cur.rowcount)


def delete_duplicates_for_focals(conn: sqlite3.Connection, focal_ids: list[int]) -> int:
    if not focal_ids:
        return 0
    cur = conn.execute(
        f"DELETE FROM duplicates WHERE focalid IN ({_placeholders(focal_ids)})",
        [int(i) for i in focal_ids],
    )
    return int(cur.rowcount)


def get_duplicate_pairs(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return conn.execute(
        """
        SELECT e1.id, e1.name, e1.type, e1.frequency, e1.isblacklisted,
               e2.id AS focal_id, e2.name AS focal_name, e2.type AS focal_type,
               e2.frequency AS focal_frequency, e2.isblacklisted AS focal_isblacklisted
        FROM duplicates d
        JOIN entity e1 ON e1.id = d.duplicateid
        JOIN entity e2 ON e2.id = d.focalid
        ORDER BY d.rowid
        """
    ).fetchall()


# ---------------------------------------------------------------------------
# Keywords
# ---------------------------------------------------------------------------


def insert_blacklisted_keyword(conn: sqlite3.Connection, term: str) -> int:
    cur = conn.execute(
        "INSERT OR IGNORE INTO blacklistedkeywords(term, type) VALUES(?, ?)",
        (term, KEYWORD_TYPE),
    )
    return int(cur.rowcount)


def delete_blacklisted_keyword(conn: sqlite3.Connection, term: str) -> int:
    cur = conn.execute("DELETE FROM blacklistedkeywords WHERE term = ?", (term,))
    return int(cur.rowcount)


def get_blacklisted_keywords(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute("SELECT term FROM blacklistedkeywords ORDER BY rowid").fetchall()
    return [str(r["term"]) for r in rows]


def insert_duplicate_keyword(conn: sqlite3.Connection, *, duplicate: str, focal: str) -> None:
    conn.execute("INSERT INTO duplicatekeywords(duplicate, focal) VALUES(?, ?)", (duplicate, focal))


def delete_duplicate_keywords_for_focal(conn: sqlite3.Connection, focal: str) -> int:
    cur = conn.execute("DELETE FROM duplicatekeywords WHERE focal = ?", (focal,))
    return int(cur.rowcount)


def iter_duplicate_keywords(conn: sqlite3.Connection) -> Iterable[DuplicateRecord]:
    cur = conn.execute("SELECT duplicate, focal FROM duplicatekeywords ORDER BY rowid")
    for row in cur:
        yield DuplicateRecord(duplicate=str(row["duplicate"]), focal=str(row["focal"]))
