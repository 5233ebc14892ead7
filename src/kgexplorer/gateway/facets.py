from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable


@dataclass(frozen=True)
class Facets:
    """Caller-built search filter.

    Gateways interpret it; the network builder only narrows it with
    `with_entities`. Every id in ``entities`` must occur in a document, while
    each clause added by `with_entities` is satisfied by any one of its ids.
    """

    full_text: tuple[str, ...] = ()
    entities: tuple[int, ...] = ()
    keywords: tuple[str, ...] = ()
    from_date: str | None = None
    to_date: str | None = None
    entity_clauses: tuple[tuple[int, ...], ...] = field(default=())

    def with_entities(self, ids: Iterable[int]) -> "Facets":
        clause = tuple(int(i) for i in ids)
        if not clause:
            return self
        return replace(self, entity_clauses=self.entity_clauses + (clause,))

    def entity_requirements(self) -> list[tuple[int, ...]]:
        return [(e,) for e in self.entities] + list(self.entity_clauses)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Facets":
        data = data or {}
        return cls(
            full_text=tuple(str(t) for t in data.get("full_text") or ()),
            entities=tuple(int(e) for e in data.get("entities") or ()),
            keywords=tuple(str(k) for k in data.get("keywords") or ()),
            from_date=data.get("from_date") or None,
            to_date=data.get("to_date") or None,
        )
