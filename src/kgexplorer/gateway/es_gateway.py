from __future__ import annotations

import logging
import threading
from typing import Any

import httpx

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

CONTENT_FIELD = "Content"
CREATED_FIELD = "Created"
ENTITY_FIELD = "Entities.EntId"
KEYWORD_FIELD = "Keywords.Keyword"


def entity_type_field(entity_type: str) -> str:
    # PERSON -> EntitiesPerson.EntId
    return f"Entities{entity_type.lower().capitalize()}.EntId"


def build_query(facets: Facets) -> dict[str, Any]:
    filters: list[dict[str, Any]] = []
    if facets.full_text:
        filters.append(
            {"query_string": {"query": " ".join(facets.full_text), "default_field": CONTENT_FIELD}}
        )
    for group in facets.entity_requirements():
        filters.append({"terms": {ENTITY_FIELD: list(group)}})
    for kw in facets.keywords:
        filters.append({"term": {KEYWORD_FIELD: kw}})
    if facets.from_date or facets.to_date:
        rng: dict[str, str] = {}
        if facets.from_date:
            rng["gte"] = facets.from_date
        if facets.to_date:
            rng["lte"] = facets.to_date
        filters.append({"range": {CREATED_FIELD: rng}})

    if not filters:
        return {"match_all": {}}
    return {"bool": {"filter": filters}}


class ElasticsearchAggregationGateway(AggregationGateway):
    """Aggregations issued as ``_search`` requests against an Elasticsearch index.

    Curation state lives in the ledger, so blacklisted nodes reach the query
    only as ``exclude_ids``/``exclude_terms`` from the network builder.
    """

    def __init__(
        self,
        *,
        base_url: str,
        index: str,
        timeout_s: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.index = index
        self.timeout_s = float(timeout_s)
        self.transport = transport

    def _search(self, body: dict[str, Any], cancel: threading.Event | None) -> dict[str, Any]:
        check_cancelled(cancel)
        url = f"{self.base_url}/{self.index}/_search"
        try:
            with httpx.Client(timeout=self.timeout_s, transport=self.transport) as client:
                r = client.post(url, json=body)
        except httpx.HTTPError as e:
            raise GatewayError(f"Failed to reach Elasticsearch at {self.base_url} ({e})") from e

        if r.status_code != 200:
            raise GatewayError(f"Elasticsearch error {r.status_code}: {r.text}")
        data = r.json()
        if "aggregations" not in data:
            raise GatewayError(f"Unexpected Elasticsearch response: {data}")
        return data

    def _terms_agg(self, field: str, size: int, include: list, exclude: list) -> dict[str, Any]:
        terms: dict[str, Any] = {"field": field, "size": int(size)}
        if include:
            terms["include"] = list(include)
        if exclude:
            terms["exclude"] = list(exclude)
        return {"terms": terms}

    def aggregate_entities(
        self,
        facets: Facets,
        size: int,
        include_ids: list[int],
        exclude_ids: list[int],
        *,
        cancel: threading.Event | None = None,
    ) -> list[NodeBucket]:
        body = {
            "size": 0,
            "query": build_query(facets),
            "aggs": {"entities": self._terms_agg(ENTITY_FIELD, size, include_ids, exclude_ids)},
        }
        data = self._search(body, cancel)
        buckets = data["aggregations"]["entities"]["buckets"]
        logger.debug("aggregate_entities: %d buckets", len(buckets))
        return [NodeBucket(int(b["key"]), int(b["doc_count"])) for b in buckets]

    def aggregate_keywords(
        self,
        facets: Facets,
        size: int,
        include_terms: list[str],
        exclude_terms: list[str],
        *,
        cancel: threading.Event | None = None,
    ) -> list[MetaDataBucket]:
        body = {
            "size": 0,
            "query": build_query(facets),
            "aggs": {"keywords": self._terms_agg(KEYWORD_FIELD, size, include_terms, exclude_terms)},
        }
        data = self._search(body, cancel)
        buckets = data["aggregations"]["keywords"]["buckets"]
        logger.debug("aggregate_keywords: %d buckets", len(buckets))
        return [MetaDataBucket(str(b["key"]), int(b["doc_count"])) for b in buckets]

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
        es_field = KEYWORD_FIELD if field == KEYWORDS_FIELD else field
        excluded = set(exclude_terms)
        wanted = [t for t in dict.fromkeys(terms) if t not in excluded]
        if not wanted:
            return KeywordAggregation(field, [])

        query = build_query(facets)
        must = [{"term": {es_field: t}} for t in terms]
        body = {
            "size": 0,
            "query": {"bool": {"filter": [query, *must]}},
            "aggs": {field: self._terms_agg(es_field, size, wanted, [])},
        }
        data = self._search(body, cancel)
        counts = {str(b["key"]): int(b["doc_count"]) for b in data["aggregations"][field]["buckets"]}
        # Terms without matching documents get no bucket from Elasticsearch.
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
        body = {
            "size": 0,
            "query": build_query(facets),
            "aggs": {t: {"cardinality": {"field": entity_type_field(t)}} for t in type_fields},
        }
        data = self._search(body, cancel)
        aggs = data["aggregations"]
        return [MetaDataBucket(t, int(aggs[t]["value"])) for t in type_fields]
