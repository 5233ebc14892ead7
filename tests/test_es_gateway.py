import json
import sqlite3
import unittest

import httpx

from kgexplorer.gateway import Facets, GatewayError
from kgexplorer.gateway.base import KEYWORDS_FIELD, KeyTerm, MetaDataBucket, NodeBucket
from kgexplorer.gateway.es_gateway import (
    ElasticsearchAggregationGateway,
    build_query,
    entity_type_field,
)
from kgexplorer.ledger import sqlite_ledger
from kgexplorer.ledger.dedup import DeduplicationService
from kgexplorer.network.builder import KeywordNetworkBuilder


def _gateway(handler) -> tuple[ElasticsearchAggregationGateway, list]:
    seen = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, json.loads(request.content)))
        return handler(request)

    gw = ElasticsearchAggregationGateway(
        base_url="http://es.test:9200/",
        index="news",
        transport=httpx.MockTransport(record),
    )
    return gw, seen


def _aggs(payload: dict) -> httpx.Response:
    return httpx.Response(200, json={"hits": {"total": 0}, "aggregations": payload})


class TestBuildQuery(unittest.TestCase):
    def test_empty_facets_match_everything(self):
        self.assertEqual(build_query(Facets()), {"match_all": {}})

    def test_all_filters(self):
        facets = Facets(
            full_text=("climate",),
            entities=(7,),
            keywords=("energy",),
            from_date="2018-01-01",
        ).with_entities([1, 2])
        filters = build_query(facets)["bool"]["filter"]
        self.assertEqual(
            filters,
            [
                {"query_string": {"query": "climate", "default_field": "Content"}},
                {"terms": {"Entities.EntId": [7]}},
                {"terms": {"Entities.EntId": [1, 2]}},
                {"term": {"Keywords.Keyword": "energy"}},
                {"range": {"Created": {"gte": "2018-01-01"}}},
            ],
        )

    def test_entity_type_field(self):
        self.assertEqual(entity_type_field("PERSON"), "EntitiesPerson.EntId")


class TestAggregations(unittest.TestCase):
    def test_aggregate_entities(self):
        gw, seen = _gateway(
            lambda r: _aggs({"entities": {"buckets": [{"key": 4, "doc_count": 9}, {"key": "12", "doc_count": 2}]}})
        )
        res = gw.aggregate_entities(Facets(), 5, [], [3])

        self.assertEqual(res, [NodeBucket(4, 9), NodeBucket(12, 2)])
        path, body = seen[0]
        self.assertEqual(path, "/news/_search")
        self.assertEqual(body["size"], 0)
        self.assertEqual(
            body["aggs"]["entities"],
            {"terms": {"field": "Entities.EntId", "size": 5, "exclude": [3]}},
        )

    def test_aggregate_keywords_with_include(self):
        gw, seen = _gateway(lambda r: _aggs({"keywords": {"buckets": [{"key": "energy", "doc_count": 3}]}}))
        res = gw.aggregate_keywords(Facets(), 2, ["energy", "coal"], [])

        self.assertEqual(res, [MetaDataBucket("energy", 3)])
        self.assertEqual(seen[0][1]["aggs"]["keywords"]["terms"]["include"], ["energy", "coal"])

    def test_keyword_aggregate_requires_both_terms(self):
        gw, seen = _gateway(lambda r: _aggs({KEYWORDS_FIELD: {"buckets": [{"key": "coal", "doc_count": 4}]}}))
        agg = gw.keyword_aggregate(Facets(), KEYWORDS_FIELD, 2, ["energy", "coal"], [])

        self.assertEqual(agg.buckets, [KeyTerm("coal", 4), KeyTerm("energy", 0)])
        query = seen[0][1]["query"]["bool"]["filter"]
        self.assertEqual(
            query,
            [
                {"match_all": {}},
                {"term": {"Keywords.Keyword": "energy"}},
                {"term": {"Keywords.Keyword": "coal"}},
            ],
        )

    def test_keyword_aggregate_without_terms_skips_request(self):
        gw, seen = _gateway(lambda r: _aggs({}))
        agg = gw.keyword_aggregate(Facets(), KEYWORDS_FIELD, 2, ["a"], ["a"])
        self.assertEqual(agg.buckets, [])
        self.assertEqual(seen, [])

    def test_cardinality_per_type(self):
        gw, seen = _gateway(lambda r: _aggs({"PERSON": {"value": 11}, "LOCATION": {"value": 0}}))
        res = gw.cardinality_aggregate(Facets(), ["PERSON", "LOCATION"])

        self.assertEqual(res, [MetaDataBucket("PERSON", 11), MetaDataBucket("LOCATION", 0)])
        self.assertEqual(
            seen[0][1]["aggs"]["PERSON"],
            {"cardinality": {"field": "EntitiesPerson.EntId"}},
        )


class TestErrors(unittest.TestCase):
    def test_http_error_status(self):
        gw, _ = _gateway(lambda r: httpx.Response(500, text="shard failure"))
        with self.assertRaises(GatewayError):
            gw.aggregate_entities(Facets(), 5, [], [])

    def test_missing_aggregations(self):
        gw, _ = _gateway(lambda r: httpx.Response(200, json={"hits": {}}))
        with self.assertRaises(GatewayError):
            gw.aggregate_keywords(Facets(), 5, [], [])

    def test_connection_failure(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        gw, _ = _gateway(refuse)
        with self.assertRaises(GatewayError):
            gw.cardinality_aggregate(Facets(), ["PERSON"])


class TestCurationReachesQueries(unittest.TestCase):
    def setUp(self):
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        sqlite_ledger.init_ledger(conn)
        self.merkel = sqlite_ledger.insert_entity(conn, name="Angela Merkel", type="PERSON")
        self.berlin = sqlite_ledger.insert_entity(conn, name="Berlin", type="LOCATION")
        conn.commit()
        self.conn = conn
        self.dedup = DeduplicationService(conn)

    def tearDown(self):
        self.conn.close()

    def test_blacklisted_keyword_is_excluded_from_network(self):
        self.dedup.blacklist_keyword("the")
        gw, seen = _gateway(
            lambda r: _aggs(
                {"keywords": {"buckets": [{"key": "the", "doc_count": 30}, {"key": "merkel", "doc_count": 8}]}}
            )
        )
        builder = KeywordNetworkBuilder(gateway=gw, dedup=self.dedup, workers=1)

        net = builder.create_network(Facets(), [NodeBucket(self.merkel, 1)], 10)

        self.assertNotIn("the", [n.term for n in net.nodes])
        self.assertEqual(
            seen[0][1]["aggs"]["keywords"],
            {"terms": {"field": "Keywords.Keyword", "size": 10, "exclude": ["the"]}},
        )

    def test_blacklisted_entity_is_excluded_from_neighbors(self):
        self.dedup.blacklist([self.berlin])
        gw, seen = _gateway(lambda r: _aggs({"entities": {"buckets": [{"key": 77, "doc_count": 2}]}}))
        builder = KeywordNetworkBuilder(gateway=gw, dedup=self.dedup, workers=1)

        res = builder.get_neighbors(Facets(), self.merkel, 5, exclude=[self.merkel])

        self.assertEqual(res, [NodeBucket(77, 2)])
        self.assertEqual(seen[0][1]["aggs"]["entities"]["terms"]["exclude"], [self.merkel, self.berlin])


if __name__ == "__main__":
    unittest.main()
