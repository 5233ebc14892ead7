from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import Settings
from .gateway import Facets, GatewayError, create_gateway
from .gateway.base import NodeBucket
from .gateway.sqlite_gateway import init_index
from .ledger import sqlite_ledger
from .ledger.dedup import DeduplicationService
from .network.builder import KeywordNetworkBuilder
from .network.models import GraphState, KeywordNetwork


app = typer.Typer(add_completion=False, help="Curate entities and keywords, explore co-occurrence networks.")
console = Console()

entities_app = typer.Typer(add_completion=False, help="Blacklist, merge, rename and annotate entities.")
keywords_app = typer.Typer(add_completion=False, help="Blacklist and merge keywords.")
network_app = typer.Typer(add_completion=False, help="Build keyword co-occurrence networks for a search filter.")
app.add_typer(entities_app, name="entities")
app.add_typer(keywords_app, name="keywords")
app.add_typer(network_app, name="network")

DB_OPTION = typer.Option(Path(Settings().db_path), "--db", help="Ledger/index SQLite DB")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log gateway calls")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _open(db: Path) -> sqlite3.Connection:
    conn = sqlite_ledger.connect(db)
    sqlite_ledger.init_ledger(conn)
    init_index(conn)
    return conn


def _builder(conn: sqlite3.Connection, db: Path) -> KeywordNetworkBuilder:
    settings = Settings()
    return KeywordNetworkBuilder(
        gateway=create_gateway(settings, db_path=str(db)),
        dedup=DeduplicationService(conn),
        workers=settings.gateway_workers,
    )


def _facets(
    text: list[str] | None,
    entity: list[int] | None,
    keyword: list[str] | None,
    from_date: str | None,
    to_date: str | None,
) -> Facets:
    return Facets(
        full_text=tuple(text or ()),
        entities=tuple(entity or ()),
        keywords=tuple(keyword or ()),
        from_date=from_date,
        to_date=to_date,
    )


def _report(ok: bool, message: str) -> None:
    if ok:
        console.print(message, style="green", markup=False)
        return
    console.print(f"Failed: {message}", style="red", markup=False)
    raise typer.Exit(code=1)


def _entity_table(title: str, entities) -> Table:
    table = Table(title=title)
    table.add_column("id", justify="right")
    table.add_column("name")
    table.add_column("type")
    table.add_column("frequency", justify="right")
    for e in entities:
        table.add_row(str(e.id), e.name, e.type, str(e.frequency))
    return table


def _print_network(net: KeywordNetwork) -> None:
    nodes = Table(title=f"Nodes ({len(net.nodes)})")
    nodes.add_column("term")
    nodes.add_column("score", justify="right")
    for n in net.nodes:
        nodes.add_row(n.term, str(n.score))
    console.print(nodes)

    edges = Table(title=f"Edges ({len(net.relationships)})")
    edges.add_column("source")
    edges.add_column("dest")
    edges.add_column("weight", justify="right")
    for r in net.relationships:
        edges.add_row(r.source, r.dest, str(r.weight))
    console.print(edges)


# ---------------------------------------------------------------------------
# entities
# ---------------------------------------------------------------------------


@entities_app.command("blacklist")
def entities_blacklist(ids: list[int] = typer.Argument(...), db: Path = DB_OPTION):
    """Hide entities from every listing."""
    conn = _open(db)
    try:
        ok = DeduplicationService(conn).blacklist(ids)
    finally:
        conn.close()
    _report(ok, f"Blacklisted {len(ids)} entities")


@entities_app.command("undo-blacklist")
def entities_undo_blacklist(ids: list[int] = typer.Argument(...), db: Path = DB_OPTION):
    """Make entities visible again (also undoes their merges)."""
    conn = _open(db)
    try:
        ok = DeduplicationService(conn).undo_blacklist(ids)
    finally:
        conn.close()
    _report(ok, f"Restored {len(ids)} entities")


@entities_app.command("merge")
def entities_merge(
    focal: int = typer.Option(..., "--focal", help="Entity that subsumes the duplicates"),
    duplicates: list[int] = typer.Argument(...),
    db: Path = DB_OPTION,
):
    """Merge duplicate entities into a focal entity."""
    conn = _open(db)
    try:
        ok = DeduplicationService(conn).merge(focal, duplicates)
    finally:
        conn.close()
    _report(ok, f"Merged {len(duplicates)} entities into {focal}")


@entities_app.command("undo-merge")
def entities_undo_merge(focals: list[int] = typer.Argument(...), db: Path = DB_OPTION):
    """Release every duplicate merged into the given focal entities."""
    conn = _open(db)
    try:
        ok = DeduplicationService(conn).undo_merge(focals)
    finally:
        conn.close()
    _report(ok, f"Undid merges of {len(focals)} focal entities")


@entities_app.command("rename")
def entities_rename(entity_id: int = typer.Argument(...), name: str = typer.Argument(...), db: Path = DB_OPTION):
    conn = _open(db)
    try:
        ok = DeduplicationService(conn).change_name(entity_id, name)
    finally:
        conn.close()
    _report(ok, f"Renamed entity {entity_id} to {name}")


@entities_app.command("retype")
def entities_retype(entity_id: int = typer.Argument(...), type: str = typer.Argument(...), db: Path = DB_OPTION):
    conn = _open(db)
    try:
        ok = DeduplicationService(conn).change_type(entity_id, type)
    finally:
        conn.close()
    _report(ok, f"Changed type of entity {entity_id} to {type}")


@entities_app.command("whitelist")
def entities_whitelist(
    text: str = typer.Argument(...),
    doc: int = typer.Option(..., "--doc", help="Document id"),
    start: int = typer.Option(..., "--start"),
    end: int = typer.Option(..., "--end"),
    type: str = typer.Option(..., "--type", help="Entity type, e.g. PERSON"),
    db: Path = DB_OPTION,
):
    """Promote a text span to a new entity."""
    conn = _open(db)
    try:
        ent = DeduplicationService(conn).whitelist(text, start, end, type, doc)
    finally:
        conn.close()
    _report(True, f"Created entity {ent.id} ({ent.name}, {ent.type})")


@entities_app.command("annotate")
def entities_annotate(
    text: str = typer.Argument(...),
    entity: int = typer.Option(..., "--entity", help="Existing entity id"),
    doc: int = typer.Option(..., "--doc", help="Document id"),
    start: int = typer.Option(..., "--start"),
    end: int = typer.Option(..., "--end"),
    type: str = typer.Option("", "--type"),
    db: Path = DB_OPTION,
):
    """Record another mention of an existing entity."""
    conn = _open(db)
    try:
        ok = DeduplicationService(conn).update_frequency(text, start, end, type, entity, doc)
    finally:
        conn.close()
    _report(ok, f"Added mention of entity {entity} in doc {doc}")


@entities_app.command("show")
def entities_show(ids: list[int] = typer.Argument(...), db: Path = DB_OPTION):
    """Show visible entities by id."""
    conn = _open(db)
    try:
        ents = DeduplicationService(conn).get_by_ids(ids)
    finally:
        conn.close()
    console.print(_entity_table("Entities", ents))


@entities_app.command("find")
def entities_find(name: str = typer.Argument(...), type: str = typer.Argument(...), db: Path = DB_OPTION):
    """Find visible entities by exact name and type."""
    conn = _open(db)
    try:
        ents = DeduplicationService(conn).get_name_and_type(name, type)
    finally:
        conn.close()
    console.print(_entity_table(f"{name} ({type})", ents))


@entities_app.command("blacklisted")
def entities_blacklisted(db: Path = DB_OPTION):
    conn = _open(db)
    try:
        ents = DeduplicationService(conn).get_blacklisted()
    finally:
        conn.close()
    console.print(_entity_table("Blacklisted entities", ents))


@entities_app.command("merged")
def entities_merged(db: Path = DB_OPTION):
    """List focal nodes with their duplicates (entities and keywords)."""
    conn = _open(db)
    try:
        merged = DeduplicationService(conn).get_merged()
    finally:
        conn.close()

    table = Table(title="Merged")
    table.add_column("focal")
    table.add_column("type")
    table.add_column("duplicates")
    for focal, dups in merged.items():
        label = focal.name if focal.id < 0 else f"{focal.name} [{focal.id}]"
        table.add_row(label, focal.type, ", ".join(d.name for d in dups))
    console.print(table)


@entities_app.command("fragments")
def entities_fragments(
    doc: int = typer.Option(..., "--doc", help="Document id"),
    blacklisted: bool = typer.Option(False, "--blacklisted", help="Show blacklisted mentions instead"),
    db: Path = DB_OPTION,
):
    """Show entity mentions of a document with their offsets."""
    conn = _open(db)
    try:
        svc = DeduplicationService(conn)
        pairs = svc.get_blacklist_fragments(doc) if blacklisted else svc.get_entity_fragments(doc)
    finally:
        conn.close()

    table = Table(title=f"Fragments in doc {doc}")
    table.add_column("start", justify="right")
    table.add_column("end", justify="right")
    table.add_column("entity")
    table.add_column("type")
    for ent, frag in pairs:
        table.add_row(str(frag.start), str(frag.end), f"{ent.name} [{ent.id}]", ent.type)
    console.print(table)


@entities_app.command("types")
def entities_types(db: Path = DB_OPTION):
    conn = _open(db)
    try:
        types = DeduplicationService(conn).get_types()
    finally:
        conn.close()
    for name, idx in types.items():
        console.print(f"{idx}: {name}", markup=False)


# ---------------------------------------------------------------------------
# keywords
# ---------------------------------------------------------------------------


@keywords_app.command("blacklist")
def keywords_blacklist(term: str = typer.Argument(...), db: Path = DB_OPTION):
    conn = _open(db)
    try:
        ok = DeduplicationService(conn).blacklist_keyword(term)
    finally:
        conn.close()
    _report(ok, f"Blacklisted keyword {term}")


@keywords_app.command("merge")
def keywords_merge(
    focal: str = typer.Option(..., "--focal", help="Keyword that subsumes the duplicates"),
    duplicates: list[str] = typer.Argument(...),
    db: Path = DB_OPTION,
):
    conn = _open(db)
    try:
        ok = DeduplicationService(conn).merge_keywords(focal, duplicates)
    finally:
        conn.close()
    _report(ok, f"Merged {len(duplicates)} keywords into {focal}")


@keywords_app.command("undo-merge")
def keywords_undo_merge(terms: list[str] = typer.Argument(..., help="Focal keyword first, then terms to restore"), db: Path = DB_OPTION):
    conn = _open(db)
    try:
        ok = DeduplicationService(conn).undo_merge_keywords(terms)
    finally:
        conn.close()
    _report(ok, f"Undid keyword merge of {terms[0]}")


@keywords_app.command("blacklisted")
def keywords_blacklisted(db: Path = DB_OPTION):
    conn = _open(db)
    try:
        terms = DeduplicationService(conn).get_blacklisted_keywords()
    finally:
        conn.close()
    for t in terms:
        console.print(t, markup=False)


@keywords_app.command("merged")
def keywords_merged(db: Path = DB_OPTION):
    conn = _open(db)
    try:
        merged = DeduplicationService(conn).get_merged_keywords()
    finally:
        conn.close()
    for focal, dups in merged.items():
        console.print(f"{focal}: {', '.join(dups)}", markup=False)


# ---------------------------------------------------------------------------
# network
# ---------------------------------------------------------------------------


@network_app.command("create")
def network_create(
    seed: list[int] = typer.Option(..., "--seed", help="Entity ids of the current graph"),
    terms: int | None = typer.Option(None, "--terms", help="Number of keyword nodes"),
    exclude: list[str] | None = typer.Option(None, "--exclude", help="Keywords to leave out"),
    text: list[str] | None = typer.Option(None, "--text", help="Full-text filter"),
    entity: list[int] | None = typer.Option(None, "--entity", help="Entity filter"),
    keyword: list[str] | None = typer.Option(None, "--keyword", help="Keyword filter"),
    from_date: str | None = typer.Option(None, "--from"),
    to_date: str | None = typer.Option(None, "--to"),
    db: Path = DB_OPTION,
):
    """Build a keyword network for the documents of the seed entities."""
    facets = _facets(text, entity, keyword, from_date, to_date)
    conn = _open(db)
    try:
        builder = _builder(conn, db)
        state = builder.set_graph_nodes(GraphState(), [NodeBucket(i, 0) for i in seed])
        net = builder.create_network_for_state(
            facets, state, Settings().network_terms if terms is None else terms, exclude or ()
        )
    except GatewayError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=2)
    finally:
        conn.close()
    _print_network(net)


@network_app.command("induce")
def network_induce(
    current: list[str] = typer.Option([], "--current", help="Keywords already in the network"),
    new: list[str] = typer.Option(..., "--new", help="Keywords to add"),
    text: list[str] | None = typer.Option(None, "--text"),
    entity: list[int] | None = typer.Option(None, "--entity"),
    keyword: list[str] | None = typer.Option(None, "--keyword"),
    from_date: str | None = typer.Option(None, "--from"),
    to_date: str | None = typer.Option(None, "--to"),
    db: Path = DB_OPTION,
):
    """Add keywords to an existing network."""
    facets = _facets(text, entity, keyword, from_date, to_date)
    conn = _open(db)
    try:
        net = _builder(conn, db).induce_network(facets, current, new)
    except GatewayError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=2)
    finally:
        conn.close()
    _print_network(net)


@network_app.command("neighbors")
def network_neighbors(
    entity_id: int = typer.Argument(...),
    size: int = typer.Option(10, "--size"),
    exclude: list[int] | None = typer.Option(None, "--exclude"),
    text: list[str] | None = typer.Option(None, "--text"),
    db: Path = DB_OPTION,
):
    """Entities co-occurring with an entity."""
    facets = _facets(text, None, None, None, None)
    conn = _open(db)
    try:
        builder = _builder(conn, db)
        buckets = builder.get_neighbors(facets, entity_id, size, exclude or ())
        names = {e.id: e for e in builder.dedup.get_by_ids([b.id for b in buckets])}
    except GatewayError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=2)
    finally:
        conn.close()

    table = Table(title=f"Neighbors of {entity_id}")
    table.add_column("id", justify="right")
    table.add_column("name")
    table.add_column("docs", justify="right")
    for b in buckets:
        ent = names.get(b.id)
        table.add_row(str(b.id), ent.name if ent else "?", str(b.count))
    console.print(table)


@network_app.command("neighbor-types")
def network_neighbor_types(
    entity_id: int = typer.Argument(...),
    text: list[str] | None = typer.Option(None, "--text"),
    db: Path = DB_OPTION,
):
    """Number of co-occurring entities per entity type."""
    facets = _facets(text, None, None, None, None)
    conn = _open(db)
    try:
        counts = _builder(conn, db).get_neighbor_counts_per_type(facets, entity_id)
    except GatewayError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=2)
    finally:
        conn.close()
    for t, n in counts.items():
        console.print(f"{t}: {n}", markup=False)


@network_app.command("keywords")
def network_keywords(
    entity: list[int] = typer.Option(..., "--entity", help="Entities that must occur (any of)"),
    terms: int = typer.Option(10, "--terms"),
    text: list[str] | None = typer.Option(None, "--text"),
    db: Path = DB_OPTION,
):
    """Top keywords of the documents mentioning the given entities."""
    facets = _facets(text, None, None, None, None)
    conn = _open(db)
    try:
        keyterms = _builder(conn, db).get_keywords_for_entities(facets, [NodeBucket(i, 0) for i in entity], terms)
    except GatewayError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=2)
    finally:
        conn.close()
    for k in keyterms:
        console.print(f"{k.term}: {k.score}", markup=False)


# ---------------------------------------------------------------------------
# misc
# ---------------------------------------------------------------------------


@app.command()
def stats(db: Path = DB_OPTION):
    """Show ledger and index stats."""
    conn = _open(db)
    try:
        rows = [
            ("Entities", "SELECT COUNT(*) AS n FROM entity"),
            ("Blacklisted entities", "SELECT COUNT(*) AS n FROM entity WHERE isblacklisted"),
            ("Merge records", "SELECT COUNT(*) AS n FROM duplicates"),
            ("Blacklisted keywords", "SELECT COUNT(*) AS n FROM blacklistedkeywords"),
            ("Keyword merge records", "SELECT COUNT(*) AS n FROM duplicatekeywords"),
            ("Fragments", "SELECT COUNT(*) AS n FROM entityoffset"),
            ("Documents", "SELECT COUNT(*) AS n FROM documents"),
        ]
        values = [(label, conn.execute(sql).fetchone()["n"]) for label, sql in rows]
    finally:
        conn.close()

    table = Table(title="kgexplorer stats")
    table.add_column("Metric")
    table.add_column("Value")
    for label, n in values:
        table.add_row(label, str(n))
    console.print(table)


@app.command()
def serve(
    db: Path = DB_OPTION,
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes (dev only)"),
):
    """Run the JSON API (FastAPI)."""
    try:
        import uvicorn
    except ImportError:
        console.print("Missing web dependencies. Install: `pip install -e '.[web]'`", style="red")
        raise typer.Exit(code=2)

    from .web.server import create_app

    app_ = create_app(default_db_path=str(db))
    uvicorn.run(app_, host=host, port=int(port), reload=bool(reload))


if __name__ == "__main__":
    app()
