from __future__ import annotations

from dataclasses import dataclass
from typing import Any

# Keywords have no surrogate id; they are wrapped in pseudo-entities when a
# listing mixes both kinds of node.
KEYWORD_TYPE = "KEYWORD"
KEYWORD_ENTITY_ID = -1


@dataclass(frozen=True)
class Entity:
    id: int
    name: str
    type: str
    frequency: int
    blacklisted: bool = False

    @classmethod
    def from_row(cls, row: Any) -> "Entity":
        keys = row.keys()
        return cls(
            id=int(row["id"]),
            name=str(row["name"]),
            type=str(row["type"]),
            frequency=int(row["frequency"]),
            blacklisted=bool(row["isblacklisted"]) if "isblacklisted" in keys else False,
        )

    @classmethod
    def keyword(cls, term: str) -> "Entity":
        return cls(id=KEYWORD_ENTITY_ID, name=term, type=KEYWORD_TYPE, frequency=1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "frequency": self.frequency,
            "blacklisted": self.blacklisted,
        }


@dataclass(frozen=True)
class Fragment:
    start: int
    end: int


@dataclass(frozen=True)
class DuplicateRecord:
    duplicate: int | str
    focal: int | str
