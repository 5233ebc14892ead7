from __future__ import annotations

import logging
import re
import sqlite3
import threading
from typing import Any

from ..ledger import sqlite_ledger
from .base import (
    KEYWORDS_FIELD,
    AggregationGateway,
    GatewayError,
    KeyTerm,
    KeywordAggregation,
    MetaDataBucket,
    NodeBucket,
    check_cancelled,
)
from .facets import Facets


logger = logging.getLogger(__name__)


def init_index(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS documents (
          docid INTEGER PRIMARY KEY,
          content TEXT NOT NULL,
          created TEXT
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS documententity (
          docid INTEGER NOT NULL REFERENCES documents(docid) ON DELETE CASCADE,
          entid INTEGER NOT NULL,
          frequency INTEGER NOT NULL,
          PRIMARY KEY (docid, entid)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_documententity_entity ON documententity(entid);")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS documentkeyword (
          docid INTEGER NOT NULL REFERENCES documents(docid) ON DELETE CASCADE,
          term TEXT NOT NULL,
          frequency INTEGER NOT NULL,
          PRIMARY KEY (docid, term)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_documentkeyword_term ON documentkeyword(term);")
    conn.execute("CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(content);")
    conn.commit()


def index_document(
    conn: sqlite3.Connection,
    *,
    doc_id: int,
    content: str,
    created: str | None = None,
    entities: dict[int, int] | None = None,
    keywords: dict[str, int] | None = None,
) -> None:
    """Store an already annotated document, replacing any previous version.

    ``entities`` maps entity id -> mentions, ``keywords`` maps term -> frequency.
    """
    did = int(doc_id)
    conn.execute(
        "INSERT OR REPLACE INTO documents(docid, content, created) VALUES(?, ?, ?)",
        (did, content, created),
    )
    conn.execute("DELETE FROM documententity WHERE docid = ?", (did,))
    conn.execute("DELETE FROM documentkeyword WHERE docid = ?", (did,))
    conn.executemany(
        "INSERT INTO documententity(docid, entid, frequency) VALUES(?, ?, ?)",
        [(did, int(e), int(n)) for e, n in (entities or {}).items()],
    )
    conn.executemany(
        "INSERT INTO documentkeyword(docid, term, frequency) VALUES(?, ?, ?)",
        [(did, str(t), int(n)) for t, n in (keywords or {}).items()],
    )
    conn.execute("DELETE FROM documents_fts WHERE rowid = ?", (did,))
    conn.execute("INSERT INTO documents_fts(rowid, content) VALUES(?, ?)", (did, content))
    conn.commit()


def _fts_query(q: str) -> str:
    """
    Build an FTS5 MATCH query from free-text filter terms.

    Raw user text can break the FTS5 query syntax, so it is reduced to an OR
    query over quoted tokens.
    """
    tokens = re.findall(r"\w+", q.lower())
    tokens = [t for t in tokens if t][:20]
    if not tokens:
        return ""
    return " OR ".join(f'"{t}"' for t in tokens)


def _placeholders(values: list) -> str:
    return ",".join(["?"] * len(values))


def _document_filter(facets: Facets) -> tuple[str, list[Any]]:
    """Return a ``SELECT docid`` subquery for the documents matching ``facets``."""
    clauses: list[str] = []
    params: list[Any] = []

    match = _fts_query(" ".join(facets.full_text))
    if match:
        clauses.append("d.docid IN (SELECT rowid FROM documents_fts WHERE documents_fts MATCH ?)")
        params.append(match)

    # A focal entity also matches documents that mention one of its merged duplicates.
    for group in facets.entity_requirements():
        ph = _placeholders(list(group))
        clauses.append(
            f"""d.docid IN (
                  SELECT docid FROM documententity
                  WHERE entid IN ({ph})
                     OR entid IN (SELECT duplicateid FROM duplicates WHERE focalid IN ({ph})))"""
        )
        params.extend(group)
        params.extend(group)

    for kw in facets.keywords:
        clauses.append("d.docid IN (SELECT docid FROM documentkeyword WHERE term = ?)")
        params.append(kw)

    if facets.from_date:
        clauses.append("d.created >= ?")
        params.append(facets.from_date)
    if facets.to_date:
        clauses.append("d.created <= ?")
        params.append(facets.to_date)

    where = " AND ".join(clauses) if clauses else "1"
    return f"SELECT d.docid FROM documents d WHERE {where}", params


class SQLiteAggregationGateway(AggregationGateway):
    """Aggregations over the SQLite document index next to the ledger tables.

    Blacklisted entities and keywords never show up in buckets. Each call opens
    its own connection so calls can run from worker threads.
    """

    def __init__(self, db_path: str):
        self.db_path = str(db_path)

    def _fetch(self, sql: str, params: list[Any], cancel: threading.Event | None) -> list[sqlite3.Row]:
        check_cancelled(cancel)
        conn = sqlite_ledger.connect(self.db_path)
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise GatewayError(f"Aggregation query failed on {self.db_path}: {e}") from e
        finally:
            conn.close()

    def aggregate_entities(
        self,
        facets: Facets,
        size: int,
        include_ids: list[int],
        exclude_ids: list[int],
        *,
        cancel: threading.Event | None = None,
    ) -> list[NodeBucket]:
        docs_sql, params = _document_filter(facets)
        sql = f"""
            SELECT de.entid AS id, COUNT(DISTINCT de.docid) AS n
            FROM documententity de
            JOIN entity e ON e.id = de.entid
            WHERE de.docid IN ({docs_sql}) AND NOT e.isblacklisted
        """
        if include_ids:
            sql += f" AND de.entid IN ({_placeholders(list(include_ids))})"
            params.extend(int(i) for i in include_ids)
        if exclude_ids:
            sql += f" AND de.entid NOT IN ({_placeholders(list(exclude_ids))})"
            params.extend(int(i) for i in exclude_ids)
        sql += " GROUP BY de.entid ORDER BY n DESC, de.entid LIMIT ?"
        params.append(int(size))

        rows = self._fetch(sql, params, cancel)
        logger.debug("aggregate_entities: %d buckets", len(rows))
        return [NodeBucket(int(r["id"]), int(r["n"])) for r in rows]

    def aggregate_keywords(
        self,
        facets: Facets,
        size: int,
        include_terms: list[str],
        exclude_terms: list[str],
        *,
        cancel: threading.Event | None = None,
    ) -> list[MetaDataBucket]:
        docs_sql, params = _document_filter(facets)
        sql = f"""
            SELECT dk.term AS term, COUNT(DISTINCT dk.docid) AS n
            FROM documentkeyword dk
            WHERE dk.docid IN ({docs_sql})
              AND dk.term NOT IN (SELECT term FROM blacklistedkeywords)
        """
        if include_terms:
            sql += f" AND dk.term IN ({_placeholders(list(include_terms))})"
            params.extend(include_terms)
        if exclude_terms:
            sql += f" AND dk.term NOT IN ({_placeholders(list(exclude_terms))})"
            params.extend(exclude_terms)
        sql += " GROUP BY dk.term ORDER BY n DESC, dk.term LIMIT ?"
        params.append(int(size))

        rows = self._fetch(sql, params, cancel)
        logger.debug("aggregate_keywords: %d buckets", len(rows))
        return [MetaDataBucket(str(r["term"]), int(r["n"])) for r in rows]

    def keyword_aggregate(
        self,
        facets: Facets,
        field: str,
        size: int,
        terms: list[str],
        exclude_terms: list[str],
        *,
        cancel: threading.Event | None = None,
    ) -> KeywordAggregation:
        if field != KEYWORDS_FIELD:
            raise GatewayError(f"Unsupported aggregation field: {field!r}")

        excluded = set(exclude_terms)
        wanted = [t for t in dict.fromkeys(terms) if t not in excluded]
        if not wanted:
            return KeywordAggregation(field, [])

        docs_sql, params = _document_filter(facets)
        sql = f"SELECT dk.term AS term, COUNT(DISTINCT dk.docid) AS n FROM documentkeyword dk WHERE dk.docid IN ({docs_sql})"
        # Only documents containing every requested term.
        for t in terms:
            sql += " AND dk.docid IN (SELECT docid FROM documentkeyword WHERE term = ?)"
            params.append(t)
        sql += f" AND dk.term IN ({_placeholders(wanted)}) GROUP BY dk.term"
        params.extend(wanted)

        counts = {str(r["term"]): int(r["n"]) for r in self._fetch(sql, params, cancel)}
        buckets = sorted((KeyTerm(t, counts.get(t, 0)) for t in wanted), key=lambda b: b.score, reverse=True)
        return KeywordAggregation(field, buckets[: int(size)])

    def cardinality_aggregate(
        self,
        facets: Facets,
        type_fields: list[str],
        *,
        cancel: threading.Event | None = None,
    ) -> list[MetaDataBucket]:
        if not type_fields:
            return []
        docs_sql, params = _document_filter(facets)
        sql = f"""
            SELECT e.type AS type, COUNT(DISTINCT de.entid) AS n
            FROM documententity de
            JOIN entity e ON e.id = de.entid
            WHERE de.docid IN ({docs_sql})
              AND NOT e.isblacklisted
              AND e.type IN ({_placeholders(list(type_fields))})
            GROUP BY e.type
        """
        params.extend(type_fields)

        counts = {str(r["type"]): int(r["n"]) for r in self._fetch(sql, params, cancel)}
        return [MetaDataBucket(t, counts.get(t, 0)) for t in type_fields]
