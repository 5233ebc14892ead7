from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass

from .facets import Facets


# Logical field name for keyword aggregations; each gateway maps it to its own storage.
KEYWORDS_FIELD = "keywords"


class GatewayError(RuntimeError):
    pass


class OperationCancelled(GatewayError):
    pass


@dataclass(frozen=True)
class NodeBucket:
    id: int
    count: int


@dataclass(frozen=True)
class MetaDataBucket:
    key: str
    count: int


@dataclass(frozen=True)
class KeyTerm:
    term: str
    score: int


@dataclass(frozen=True)
class KeywordAggregation:
    key: str
    buckets: list[KeyTerm]


def check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("Aggregation cancelled by caller")


class AggregationGateway(ABC):
    """Filtered aggregations over the document index.

    Implementations must be safe to call from several threads at once; the
    network builder fans calls out over a worker pool. Each call checks
    ``cancel`` before touching the backend.
    """

    @abstractmethod
    def aggregate_entities(
        self,
        facets: Facets,
        size: int,
        include_ids: list[int],
        exclude_ids: list[int],
        *,
        cancel: threading.Event | None = None,
    ) -> list[NodeBucket]:
        """Top ``size`` entities by document count."""
        ...

    @abstractmethod
    def aggregate_keywords(
        self,
        facets: Facets,
        size: int,
        include_terms: list[str],
        exclude_terms: list[str],
        *,
        cancel: threading.Event | None = None,
    ) -> list[MetaDataBucket]:
        """Top ``size`` keywords by document count."""
        ...

    @abstractmethod
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
        """Frequencies of ``terms`` over documents containing all of them.

        One bucket per term, zero counts included.
        """
        ...

    @abstractmethod
    def cardinality_aggregate(
        self,
        facets: Facets,
        type_fields: list[str],
        *,
        cancel: threading.Event | None = None,
    ) -> list[MetaDataBucket]:
        """Distinct entity count per entity type."""
        ...
