from typing import Any

import sqlite3


def create_app(*, default_db_path: str | None = None):
    # Lazy import so the CLI works without web deps.
    from fastapi import FastAPI
    from fastapi.responses import JSONResponse

    from ..config import Settings
    from ..gateway import Facets, GatewayError, create_gateway
    from ..gateway.base import NodeBucket
    from ..gateway.sqlite_gateway import init_index
    from ..ledger import sqlite_ledger
    from ..ledger.dedup import DeduplicationService
    from ..network.builder import KeywordNetworkBuilder
    from ..network.models import GraphState

    settings = Settings()
    db_default = default_db_path or settings.db_path

    app = FastAPI(title="kgexplorer", version="0.1.0")

    def _open_db(db_path: str) -> sqlite3.Connection:
        conn = sqlite_ledger.connect(db_path)
        sqlite_ledger.init_ledger(conn)
        init_index(conn)
        return conn

    def _db(payload: dict[str, Any]) -> str:
        return str(payload.get("db_path") or db_default)

    def _missing(payload: dict[str, Any], *keys: str):
        missing = [k for k in keys if payload.get(k) is None]
        if missing:
            return JSONResponse({"ok": False, "error": f"missing fields: {', '.join(missing)}"}, status_code=400)
        return None

    def _curate(payload: dict[str, Any], op) -> dict[str, Any]:
        conn = _open_db(_db(payload))
        try:
            ok = op(DeduplicationService(conn))
        finally:
            conn.close()
        return {"ok": bool(ok)}

    def _network(payload: dict[str, Any], op):
        db_path = _db(payload)
        facets = Facets.from_dict(payload.get("facets"))
        conn = _open_db(db_path)
        try:
            builder = KeywordNetworkBuilder(
                gateway=create_gateway(settings, db_path=db_path),
                dedup=DeduplicationService(conn),
                workers=settings.gateway_workers,
            )
            return op(builder, facets)
        except GatewayError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=502)
        finally:
            conn.close()

    # -- entities ------------------------------------------------------------

    @app.post("/api/entities/blacklist")
    def blacklist(payload: dict[str, Any]):
        return _curate(payload, lambda svc: svc.blacklist([int(i) for i in payload.get("ids") or []]))

    @app.post("/api/entities/undo-blacklist")
    def undo_blacklist(payload: dict[str, Any]):
        return _curate(payload, lambda svc: svc.undo_blacklist([int(i) for i in payload.get("ids") or []]))

    @app.post("/api/entities/merge")
    def merge(payload: dict[str, Any]):
        if payload.get("focal_id") is None:
            return JSONResponse({"ok": False, "error": "focal_id is required"}, status_code=400)
        focal = int(payload["focal_id"])
        dups = [int(i) for i in payload.get("duplicate_ids") or []]
        return _curate(payload, lambda svc: svc.merge(focal, dups))

    @app.post("/api/entities/undo-merge")
    def undo_merge(payload: dict[str, Any]):
        return _curate(payload, lambda svc: svc.undo_merge([int(i) for i in payload.get("focal_ids") or []]))

    @app.post("/api/entities/rename")
    def rename(payload: dict[str, Any]):
        err = _missing(payload, "id", "name")
        if err is not None:
            return err
        return _curate(payload, lambda svc: svc.change_name(int(payload["id"]), str(payload["name"])))

    @app.post("/api/entities/retype")
    def retype(payload: dict[str, Any]):
        err = _missing(payload, "id", "type")
        if err is not None:
            return err
        return _curate(payload, lambda svc: svc.change_type(int(payload["id"]), str(payload["type"])))

    @app.post("/api/entities/whitelist")
    def whitelist(payload: dict[str, Any]):
        err = _missing(payload, "text", "start", "end", "type", "doc_id")
        if err is not None:
            return err
        conn = _open_db(_db(payload))
        try:
            ent = DeduplicationService(conn).whitelist(
                str(payload["text"]),
                int(payload["start"]),
                int(payload["end"]),
                str(payload["type"]),
                int(payload["doc_id"]),
            )
        finally:
            conn.close()
        return {"ok": True, "entity": ent.to_dict()}

    @app.get("/api/entities/blacklisted")
    def blacklisted(db_path: str | None = None):
        conn = _open_db(db_path or db_default)
        try:
            ents = DeduplicationService(conn).get_blacklisted()
        finally:
            conn.close()
        return {"ok": True, "entities": [e.to_dict() for e in ents]}

    @app.get("/api/entities/merged")
    def merged(db_path: str | None = None):
        conn = _open_db(db_path or db_default)
        try:
            groups = DeduplicationService(conn).get_merged()
        finally:
            conn.close()
        return {
            "ok": True,
            "merged": [
                {"focal": focal.to_dict(), "duplicates": [d.to_dict() for d in dups]}
                for focal, dups in groups.items()
            ],
        }

    @app.get("/api/entities/fragments")
    def fragments(doc_id: int, blacklisted: bool = False, db_path: str | None = None):
        conn = _open_db(db_path or db_default)
        try:
            svc = DeduplicationService(conn)
            pairs = svc.get_blacklist_fragments(doc_id) if blacklisted else svc.get_entity_fragments(doc_id)
        finally:
            conn.close()
        return {
            "ok": True,
            "fragments": [{"entity": e.to_dict(), "start": f.start, "end": f.end} for e, f in pairs],
        }

    @app.get("/api/entities/types")
    def types(db_path: str | None = None):
        conn = _open_db(db_path or db_default)
        try:
            res = DeduplicationService(conn).get_types()
        finally:
            conn.close()
        return {"ok": True, "types": res}

    # -- keywords ------------------------------------------------------------

    @app.post("/api/keywords/blacklist")
    def blacklist_keyword(payload: dict[str, Any]):
        term = str(payload.get("term") or "").strip()
        if not term:
            return JSONResponse({"ok": False, "error": "term is required"}, status_code=400)
        return _curate(payload, lambda svc: svc.blacklist_keyword(term))

    @app.post("/api/keywords/merge")
    def merge_keywords(payload: dict[str, Any]):
        focal = str(payload.get("focal") or "").strip()
        if not focal:
            return JSONResponse({"ok": False, "error": "focal is required"}, status_code=400)
        dups = [str(t) for t in payload.get("duplicates") or []]
        return _curate(payload, lambda svc: svc.merge_keywords(focal, dups))

    @app.post("/api/keywords/undo-merge")
    def undo_merge_keywords(payload: dict[str, Any]):
        return _curate(payload, lambda svc: svc.undo_merge_keywords([str(t) for t in payload.get("focals") or []]))

    @app.get("/api/keywords/blacklisted")
    def blacklisted_keywords(db_path: str | None = None):
        conn = _open_db(db_path or db_default)
        try:
            terms = DeduplicationService(conn).get_blacklisted_keywords()
        finally:
            conn.close()
        return {"ok": True, "keywords": terms}

    @app.get("/api/keywords/merged")
    def merged_keywords(db_path: str | None = None):
        conn = _open_db(db_path or db_default)
        try:
            groups = DeduplicationService(conn).get_merged_keywords()
        finally:
            conn.close()
        return {"ok": True, "merged": groups}

    # -- network -------------------------------------------------------------

    @app.post("/api/network/create")
    def network_create(payload: dict[str, Any]):
        seed = [NodeBucket(int(i), 0) for i in payload.get("seed_ids") or []]
        term_count = int(settings.network_terms if payload.get("term_count") is None else payload["term_count"])
        exclude = [str(t) for t in payload.get("exclude") or []]

        def op(builder: KeywordNetworkBuilder, facets: Facets):
            state = builder.set_graph_nodes(GraphState(), seed)
            net = builder.create_network_for_state(facets, state, term_count, exclude)
            return {"ok": True, "network": net.to_dict()}

        return _network(payload, op)

    @app.post("/api/network/induce")
    def network_induce(payload: dict[str, Any]):
        current = [str(t) for t in payload.get("current") or []]
        new = [str(t) for t in payload.get("nodes") or []]
        return _network(
            payload,
            lambda builder, facets: {"ok": True, "network": builder.induce_network(facets, current, new).to_dict()},
        )

    @app.post("/api/network/neighbors")
    def network_neighbors(payload: dict[str, Any]):
        err = _missing(payload, "entity_id")
        if err is not None:
            return err
        entity_id = int(payload["entity_id"])
        size = int(10 if payload.get("size") is None else payload["size"])
        exclude = [int(i) for i in payload.get("exclude") or []]

        def op(builder: KeywordNetworkBuilder, facets: Facets):
            buckets = builder.get_neighbors(facets, entity_id, size, exclude)
            return {"ok": True, "neighbors": [{"id": b.id, "count": b.count} for b in buckets]}

        return _network(payload, op)

    @app.post("/api/network/neighbor-types")
    def network_neighbor_types(payload: dict[str, Any]):
        err = _missing(payload, "entity_id")
        if err is not None:
            return err
        entity_id = int(payload["entity_id"])
        return _network(
            payload,
            lambda builder, facets: {"ok": True, "counts": builder.get_neighbor_counts_per_type(facets, entity_id)},
        )

    @app.post("/api/network/keywords")
    def network_keywords(payload: dict[str, Any]):
        entities = [NodeBucket(int(i), 0) for i in payload.get("entity_ids") or []]
        num_terms = int(settings.network_terms if payload.get("num_terms") is None else payload["num_terms"])

        def op(builder: KeywordNetworkBuilder, facets: Facets):
            terms = builder.get_keywords_for_entities(facets, entities, num_terms)
            return {"ok": True, "keywords": [{"term": k.term, "score": k.score} for k in terms]}

        return _network(payload, op)

    return app
