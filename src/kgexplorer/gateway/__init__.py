"""Aggregation gateways: filtered count/cardinality queries over a document index."""

from __future__ import annotations

from ..config import Settings
from .base import AggregationGateway, GatewayError, OperationCancelled
from .facets import Facets


def create_gateway(settings: Settings, *, db_path: str | None = None) -> AggregationGateway:
    if settings.gateway == "elasticsearch":
        from .es_gateway import ElasticsearchAggregationGateway

        return ElasticsearchAggregationGateway(
            base_url=settings.es_url,
            index=settings.es_index,
            timeout_s=settings.es_timeout,
        )
    if settings.gateway == "sqlite":
        from .sqlite_gateway import SQLiteAggregationGateway

        return SQLiteAggregationGateway(db_path or settings.db_path)
    raise ValueError(f"Unknown gateway: {settings.gateway!r} (expected 'sqlite' or 'elasticsearch')")


__all__ = ["AggregationGateway", "Facets", "GatewayError", "OperationCancelled", "create_gateway"]
