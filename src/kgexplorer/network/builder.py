from __future__ import annotations

import logging
import threading
from typing import Iterable

from ..gateway.base import (
    KEYWORDS_FIELD,
    AggregationGateway,
    GatewayError,
    KeyTerm,
    NodeBucket,
)
from ..gateway.facets import Facets
from ..ledger.dedup import DeduplicationService
from .fanout import bounded_map
from .models import GraphState, KeywordNetwork, KeywordRelationship


logger = logging.getLogger(__name__)


def unordered_pairs(nodes: list[str]) -> list[tuple[str, str]]:
    """Each unordered pair once; repeated nodes and self pairs are skipped."""
    visited: set[str] = set()
    pairs: list[tuple[str, str]] = []
    for source in nodes:
        visited.add(source)
        for dest in nodes:
            if dest in visited:
                continue
            pairs.append((source, dest))
    return pairs


class KeywordNetworkBuilder:
    """Creates and extends keyword co-occurrence networks for a search filter.

    Edge weights are joint document frequencies fetched one pair at a time, so
    a network over ``k`` keywords costs ``k * (k - 1) / 2`` gateway calls. Those
    calls, and the per-type neighbor counts, run on a bounded thread pool.
    """

    def __init__(
        self,
        *,
        gateway: AggregationGateway,
        dedup: DeduplicationService,
        workers: int = 8,
    ):
        self.gateway = gateway
        self.dedup = dedup
        self.workers = int(workers)

    # -- graph state ---------------------------------------------------------

    @staticmethod
    def set_graph_nodes(state: GraphState, nodes: Iterable[NodeBucket]) -> GraphState:
        return state.with_nodes(nodes)

    # -- networks ------------------------------------------------------------

    def create_network(
        self,
        facets: Facets,
        seed_nodes: list[NodeBucket],
        term_count: int = 10,
        exclude: Iterable[str] = (),
        *,
        cancel: threading.Event | None = None,
    ) -> KeywordNetwork:
        keywords = self.get_keywords_for_entities(facets, seed_nodes, term_count, exclude, cancel=cancel)
        rels = self.induce_relationships(facets, [k.term for k in keywords], cancel=cancel)
        logger.info("Created network: %d nodes, %d edges", len(keywords), len(rels))
        return KeywordNetwork(keywords, rels)

    def create_network_for_state(
        self,
        facets: Facets,
        state: GraphState,
        term_count: int = 10,
        exclude: Iterable[str] = (),
        *,
        cancel: threading.Event | None = None,
    ) -> KeywordNetwork:
        return self.create_network(facets, list(state.nodes), term_count, exclude, cancel=cancel)

    def induce_network(
        self,
        facets: Facets,
        current_nodes: list[str],
        new_nodes: list[str],
        *,
        cancel: threading.Event | None = None,
    ) -> KeywordNetwork:
        """Add ``new_nodes`` to a network without re-querying its existing edges.

        Returns the edges among the new nodes plus those between new and
        current nodes, with relevance recomputed for every node.
        """
        in_between = self.induce_relationships(facets, new_nodes, cancel=cancel)
        bipartite = [(source, dest) for source in new_nodes for dest in current_nodes]
        connecting = self._relationships(facets, bipartite, cancel)

        union = list(dict.fromkeys([*current_nodes, *new_nodes]))
        nodes: list[KeyTerm] = []
        if union:
            buckets = self.gateway.aggregate_keywords(
                facets, len(union), union, self._hidden_terms(()), cancel=cancel
            )
            nodes = [KeyTerm(b.key, b.count) for b in buckets]

        logger.info(
            "Induced %d new nodes: %d inner edges, %d connecting edges",
            len(new_nodes),
            len(in_between),
            len(connecting),
        )
        return KeywordNetwork(nodes, in_between + connecting)

    def induce_relationships(
        self,
        facets: Facets,
        nodes: list[str],
        *,
        cancel: threading.Event | None = None,
    ) -> list[KeywordRelationship]:
        return self._relationships(facets, unordered_pairs(list(nodes)), cancel)

    def _relationships(
        self,
        facets: Facets,
        pairs: list[tuple[str, str]],
        cancel: threading.Event | None,
    ) -> list[KeywordRelationship]:
        logger.debug("Fetching joint frequencies for %d pairs", len(pairs))
        rels = bounded_map(
            lambda pair: self.get_relationship(facets, pair[0], pair[1], cancel=cancel),
            pairs,
            workers=self.workers,
            cancel=cancel,
        )
        return [r for r in rels if r is not None]

    def get_relationship(
        self,
        facets: Facets,
        source: str,
        dest: str,
        *,
        cancel: threading.Event | None = None,
    ) -> KeywordRelationship | None:
        agg = self.gateway.keyword_aggregate(facets, KEYWORDS_FIELD, 2, [source, dest], [], cancel=cancel)
        if len(agg.buckets) != 2:
            return None
        a, b = agg.buckets
        if a.score == 0 and b.score == 0:
            return None
        # Both marginals count documents containing both terms.
        if a.score != b.score:
            raise GatewayError(
                f"Joint frequency mismatch for ({source!r}, {dest!r}): {a.term}={a.score}, {b.term}={b.score}"
            )
        return KeywordRelationship(source, dest, a.score)

    # -- neighbors -----------------------------------------------------------

    def get_neighbors(
        self,
        facets: Facets,
        entity_id: int,
        size: int,
        exclude: Iterable[int] = (),
        *,
        cancel: threading.Event | None = None,
    ) -> list[NodeBucket]:
        excluded = self._hidden_ids(exclude)
        skip = set(excluded)
        buckets = self.gateway.aggregate_entities(
            facets.with_entities([entity_id]), size, [], excluded, cancel=cancel
        )
        # Not every backend honours exclusions.
        return [b for b in buckets if b.id not in skip]

    def get_neighbor_counts_per_type(
        self,
        facets: Facets,
        entity_id: int,
        *,
        cancel: threading.Event | None = None,
    ) -> dict[str, int]:
        """Count distinct co-occurring entities per entity type, one query per type."""
        neighbor_facets = facets.with_entities([entity_id])
        types = list(self.dedup.get_types())
        results = bounded_map(
            lambda t: self.gateway.cardinality_aggregate(neighbor_facets, [t], cancel=cancel),
            types,
            workers=self.workers,
            cancel=cancel,
        )
        counts: dict[str, int] = {}
        for buckets in results:
            for b in buckets:
                counts[b.key] = int(b.count)
        return counts

    def get_keywords_for_entities(
        self,
        facets: Facets,
        entities: list[NodeBucket],
        num_terms: int,
        exclude: Iterable[str] = (),
        *,
        cancel: threading.Event | None = None,
    ) -> list[KeyTerm]:
        # Only documents containing at least one of the entities.
        scoped = facets.with_entities([e.id for e in entities])
        hidden = self._hidden_terms(exclude)
        buckets = self.gateway.aggregate_keywords(scoped, num_terms, [], hidden, cancel=cancel)
        skip = set(hidden)
        return [KeyTerm(b.key, b.count) for b in buckets if b.key not in skip]

    # -- curation ------------------------------------------------------------

    # The Elasticsearch index knows nothing of the ledger, so blacklisted and
    # merged-away nodes are passed to every aggregation as exclusions.

    def _hidden_terms(self, exclude: Iterable[str]) -> list[str]:
        return list(dict.fromkeys([*exclude, *self.dedup.get_blacklisted_keywords()]))

    def _hidden_ids(self, exclude: Iterable[int]) -> list[int]:
        blacklisted = [e.id for e in self.dedup.get_blacklisted()]
        return list(dict.fromkeys([*(int(e) for e in exclude), *blacklisted]))
