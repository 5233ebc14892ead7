"""Curation ledger: entities, keywords, blacklist flags and merge records.

The ledger lives in SQLite next to the document index. All writes go through
`DeduplicationService`; `sqlite_ledger` holds the row-level queries it is built on.
"""
