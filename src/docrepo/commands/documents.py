"""Commands: insert, find, get and delete documents in any collection."""

from __future__ import annotations

import json
from typing import IO, TYPE_CHECKING, Any

import click

from docrepo.commands._base import DocumentCommand

if TYPE_CHECKING:
    from docrepo.commands._context import AppContext
    from docrepo.domain.entity import GenericDocument


def _dump(entity: GenericDocument) -> dict[str, Any]:
    return entity.model_dump(mode="json")


def _parse_json(app: AppContext, op: str, raw: str, what: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        app.fail(op, f"Invalid JSON {what}: {exc}")


@click.command(
    cls=DocumentCommand,
    examples="""\
  docrepo insert worlds world.json
  echo '{"name": "Terra"}' | docrepo insert worlds
  echo '[{"name": "a"}, {"name": "b"}]' | docrepo --json insert areas""",
)
@click.argument("collection")
@click.argument("source", type=click.File("r"), default="-")
@click.pass_obj
def insert(app: AppContext, collection: str, source: IO[str]) -> None:
    """Insert a JSON object, or a JSON array of objects, into COLLECTION."""
    payload = _parse_json(app, "insert", source.read(), "input")
    repo = app.repository(collection)

    if isinstance(payload, dict):
        created = repo.create_one(payload)
        app.emit("insert", {"collection": collection, "document": _dump(created)})
        return

    if not isinstance(payload, list) or not all(isinstance(p, dict) for p in payload):
        app.fail("insert", "Input must be a JSON object or an array of objects")

    response = repo.create_many(payload)
    data = {"collection": collection, **response.to_payload()}
    if response.counts.success == 0 and response.counts.fail > 0:
        app.fail("insert", "No documents were inserted", data)
    app.emit("insert", data)


@click.command(
    cls=DocumentCommand,
    examples="""\
  docrepo find worlds
  docrepo find areas --filter '{"world_id": "abc"}' --sort name --limit 10
  docrepo --json find areas --filter '{"tags": {"$in": ["coast"]}}' --sort created --desc""",
)
@click.argument("collection")
@click.option("--filter", "filter_json", default=None, help="JSON filter document.")
@click.option("--sort", "sort_field", default=None, help="Field to sort by.")
@click.option("--desc", is_flag=True, help="Sort descending.")
@click.option("--skip", type=click.IntRange(min=0), default=0, help="Results to skip.")
@click.option("--limit", type=click.IntRange(min=0), default=0, help="Max results (0 = all).")
@click.pass_obj
def find(
    app: AppContext,
    collection: str,
    filter_json: str | None,
    sort_field: str | None,
    desc: bool,
    skip: int,
    limit: int,
) -> None:
    """List documents of COLLECTION matching an optional filter."""
    filter_doc: dict[str, Any] = {}
    if filter_json:
        parsed = _parse_json(app, "find", filter_json, "filter")
        if not isinstance(parsed, dict):
            app.fail("find", "Filter must be a JSON object")
        filter_doc = parsed

    sort = None
    if sort_field:
        sort = f"-{sort_field}" if desc else sort_field

    results = app.repository(collection).find(filter_doc, sort=sort, skip=skip, limit=limit)
    app.emit(
        "find",
        {"collection": collection, "count": len(results), "items": [_dump(r) for r in results]},
    )


@click.command(cls=DocumentCommand)
@click.argument("collection")
@click.argument("document_id")
@click.pass_obj
def get(app: AppContext, collection: str, document_id: str) -> None:
    """Show one document of COLLECTION by id."""
    found = app.repository(collection).find_by_id(document_id)
    if found is None:
        app.fail("get", f"No document {document_id!r} in {collection}")
    app.emit("get", {"collection": collection, "document": _dump(found)})


@click.command(cls=DocumentCommand)
@click.argument("collection")
@click.argument("document_ids", nargs=-1, required=True)
@click.pass_obj
def delete(app: AppContext, collection: str, document_ids: tuple[str, ...]) -> None:
    """Delete one or more documents of COLLECTION by id."""
    repo = app.repository(collection)
    if len(document_ids) == 1:
        if repo.delete_one(document_ids[0]) is None:
            app.fail("delete", f"No document {document_ids[0]!r} in {collection}")
        app.emit("delete", {"collection": collection, "deleted": 1})
        return

    response = repo.delete_many(list(document_ids))
    app.emit("delete", {"collection": collection, **response.to_payload()})
