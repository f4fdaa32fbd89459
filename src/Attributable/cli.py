"""Operator CLI for attribute definitions, values and staged imports.

Examples:
  attributable init-db
  attributable attributes create --name Colour --type select --entity product \
      --option red --option blue
  attributable values set product 42 colour red
  attributable imports stash products.csv product
  attributable imports hoard --all-pending --resource-type product

Every command runs in its own event loop and disposes the engine before
returning, so pooled connections never outlive their loop.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import click

from Attributable import db
from Attributable.attribute_types import TypedValue
from Attributable.config import Settings, load_settings
from Attributable.errors import AttributableError, describe_failure
from Attributable.importer import ImportPipeline
from Attributable.logging import setup_logging
from Attributable.services.wiring import Services, build_services

T = TypeVar("T")


@dataclass
class CliState:
    settings: Settings
    actor: str | None

    def services(self) -> Services:
        return build_services(self.settings)


def _run(fn: Callable[[], Awaitable[T]]) -> T:
    async def runner() -> T:
        try:
            return await fn()
        finally:
            await db.dispose_engine()

    try:
        return asyncio.run(runner())
    except AttributableError as exc:
        raise click.ClickException(describe_failure(exc)) from exc


def _plain(services: Services, value: Any) -> Any:
    if isinstance(value, list):
        return [_plain(services, v) for v in value]
    if isinstance(value, TypedValue):
        return services.registry.resolve(value.type).serialize(value)
    return value


def _echo(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, default=str))


def _attribute_row(obj: Any) -> dict[str, Any]:
    return {
        "id": obj.id,
        "slug": obj.slug,
        "name": obj.name,
        "type": obj.type,
        "group": obj.group,
        "sort_order": obj.sort_order,
        "entities": list(obj.entities or []),
        "is_required": obj.is_required,
        "is_collection": obj.is_collection,
        "default": obj.default,
        "options": obj.options,
    }


@click.group()
@click.option("--database-url", default=None, help="Override the configured database URL.")
@click.option("--actor", default=None, help="Actor recorded on audited changes.")
@click.pass_context
def cli(ctx: click.Context, database_url: str | None, actor: str | None) -> None:
    settings = load_settings()
    if database_url:
        settings = settings.model_copy(update={"database_url": database_url})
        db.DATABASE_URL = db._normalize_url(database_url)
    setup_logging(settings)
    ctx.obj = CliState(settings=settings, actor=actor)


@cli.command("init-db")
def init_db() -> None:
    """Create all tables (development databases; use Alembic elsewhere)."""
    _run(db.create_schema)
    click.echo("Schema created")


# -----------------------------
# attributes
# -----------------------------


@cli.group()
def attributes() -> None:
    """Manage attribute definitions."""


@attributes.command("list")
@click.option("--entity-type", default=None)
@click.pass_obj
def attributes_list(state: CliState, entity_type: str | None) -> None:
    services = state.services()

    async def go():
        async with db.session_scope() as s:
            if entity_type:
                rows = await services.definitions.find_by_entity_type(s, entity_type)
            else:
                rows = await services.definitions.list_all(s)
            return [_attribute_row(r) for r in rows]

    for row in _run(go):
        _echo(row)


@attributes.command("create")
@click.option("--name", required=True)
@click.option("--type", "type_name", required=True)
@click.option("--entity", "entities", multiple=True, required=True)
@click.option("--slug", default=None)
@click.option("--description", default=None)
@click.option("--group", default=None)
@click.option("--sort-order", type=int, default=0, show_default=True)
@click.option("--required", "is_required", is_flag=True, default=False)
@click.option("--collection", "is_collection", is_flag=True, default=False)
@click.option("--default", "default", default=None)
@click.option("--option", "options", multiple=True)
@click.pass_obj
def attributes_create(state: CliState, **opts: Any) -> None:
    services = state.services()
    spec = dict(opts)
    spec["type"] = spec.pop("type_name")
    spec["entities"] = list(spec["entities"])
    spec["options"] = list(spec["options"]) or None

    async def go():
        async with db.session_scope() as s:
            obj = await services.definitions.create(s, spec, actor=state.actor)
            return _attribute_row(obj)

    _echo(_run(go))


@attributes.command("update")
@click.argument("attribute_id", type=int)
@click.option("--name", default=None)
@click.option("--type", "type_name", default=None)
@click.option("--entity", "entities", multiple=True)
@click.option("--slug", default=None)
@click.option("--description", default=None)
@click.option("--group", default=None)
@click.option("--sort-order", type=int, default=None)
@click.option("--required/--not-required", "is_required", default=None)
@click.option("--collection/--scalar", "is_collection", default=None)
@click.option("--default", "default", default=None)
@click.option("--option", "options", multiple=True)
@click.pass_obj
def attributes_update(state: CliState, attribute_id: int, **opts: Any) -> None:
    services = state.services()
    if opts.get("type_name") is not None:
        opts["type"] = opts["type_name"]
    opts.pop("type_name")
    changes = {k: v for k, v in opts.items() if v is not None and v != ()}
    for name in ("entities", "options"):
        if name in changes:
            changes[name] = list(changes[name])
    if not changes:
        raise click.UsageError("Nothing to update")

    async def go():
        async with db.session_scope() as s:
            obj = await services.definitions.update(s, attribute_id, changes, actor=state.actor)
            return _attribute_row(obj)

    _echo(_run(go))


@attributes.command("delete")
@click.argument("attribute_id", type=int)
@click.option("--cascade/--no-cascade", default=None, help="Also delete stored values.")
@click.pass_obj
def attributes_delete(state: CliState, attribute_id: int, cascade: bool | None) -> None:
    services = state.services()

    async def go():
        async with db.session_scope() as s:
            await services.definitions.delete(s, attribute_id, cascade=cascade, actor=state.actor)

    _run(go)
    click.echo(f"Deleted attribute {attribute_id}")


@attributes.command("groups")
@click.pass_obj
def attributes_groups(state: CliState) -> None:
    services = state.services()

    async def go():
        async with db.session_scope() as s:
            return await services.definitions.list_groups(s)

    for group in _run(go):
        click.echo(group)


@attributes.command("logs")
@click.argument("attribute_id", type=int)
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_obj
def attributes_logs(state: CliState, attribute_id: int, limit: int) -> None:
    services = state.services()

    async def go():
        async with db.session_scope() as s:
            rows = await services.definitions.logs(s, attribute_id, limit=limit)
            return [
                {
                    "id": r.id,
                    "event_type": r.event_type,
                    "actor": r.actor_ref,
                    "summary": r.summary,
                    "payload": r.payload,
                    "created_at": r.created_at,
                }
                for r in rows
            ]

    for row in _run(go):
        _echo(row)


# -----------------------------
# values
# -----------------------------


@cli.group()
def values() -> None:
    """Read and write attribute values."""


@values.command("get")
@click.argument("entity_type")
@click.argument("entity_id")
@click.argument("attribute", required=False)
@click.pass_obj
def values_get(state: CliState, entity_type: str, entity_id: str, attribute: str | None) -> None:
    services = state.services()

    async def go():
        async with db.session_scope() as s:
            if attribute is None:
                found = await services.values.get_all(s, entity_type, entity_id)
                return {slug: _plain(services, v) for slug, v in found.items()}
            return _plain(services, await services.values.get(s, entity_type, entity_id, attribute))

    _echo(_run(go))


@values.command("set")
@click.argument("entity_type")
@click.argument("entity_id")
@click.argument("attribute")
@click.argument("raw", nargs=-1)
@click.pass_obj
def values_set(
    state: CliState, entity_type: str, entity_id: str, attribute: str, raw: tuple[str, ...]
) -> None:
    """Set a value; several RAW arguments store a collection in order, none clears it."""
    services = state.services()
    value: Any = None if not raw else (raw[0] if len(raw) == 1 else list(raw))

    async def go():
        async with db.session_scope() as s:
            stored = await services.values.set(
                s, entity_type, entity_id, attribute, value, actor=state.actor
            )
            return _plain(services, stored)

    _echo(_run(go))


# -----------------------------
# imports
# -----------------------------


@cli.group()
def imports() -> None:
    """Stage import files and commit staged rows."""


@imports.command("stash")
@click.argument("path", type=click.Path(dir_okay=False))
@click.argument("resource_type")
@click.option("--delimiter", default=None, help="Defaults to the configured delimiter (tab for .tsv).")
@click.pass_obj
def imports_stash(state: CliState, path: str, resource_type: str, delimiter: str | None) -> None:
    pipeline = ImportPipeline(state.services())

    async def go():
        return await pipeline.stash(path, resource_type, delimiter=delimiter, actor=state.actor)

    result = _run(go)
    click.echo(
        f"Staged {result.row_count} row(s) for {result.resource_type} "
        f"(import log {result.import_log_id})"
    )


@imports.command("list")
@click.option("--resource-type", default=None)
@click.option("--status", type=click.Choice(["pending", "success", "fail"]), default=None)
@click.pass_obj
def imports_list(state: CliState, resource_type: str | None, status: str | None) -> None:
    pipeline = ImportPipeline(state.services())

    async def go():
        rows = await pipeline.staged(resource_type=resource_type, status=status)
        return [
            {
                "id": r.id,
                "resource_type": r.resource_type,
                "status": r.status.value,
                "data": r.data,
                "notes": r.notes,
            }
            for r in rows
        ]

    for row in _run(go):
        _echo(row)


@imports.command("hoard")
@click.argument("ids", nargs=-1, type=int)
@click.option("--all-pending", is_flag=True, default=False, help="Select every pending record.")
@click.option("--resource-type", default=None, help="Restrict --all-pending to one resource.")
@click.pass_obj
def imports_hoard(
    state: CliState, ids: tuple[int, ...], all_pending: bool, resource_type: str | None
) -> None:
    pipeline = ImportPipeline(state.services())

    async def go():
        selected = list(ids)
        if all_pending:
            pending = await pipeline.staged(resource_type=resource_type, status="pending")
            selected.extend(r.id for r in pending)
        return await pipeline.hoard(selected, actor=state.actor)

    summary = _run(go)
    click.echo(f"Committed {summary.committed_count}, failed {summary.failed_count}")
    for record_id, message in summary.failed.items():
        click.echo(f"  #{record_id}: {message.splitlines()[0]}", err=True)


@imports.command("logs")
@click.option("--resource-type", default=None)
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_obj
def imports_logs(state: CliState, resource_type: str | None, limit: int) -> None:
    pipeline = ImportPipeline(state.services())

    async def go():
        rows = await pipeline.import_logs(resource_type=resource_type, limit=limit)
        return [
            {
                "id": r.id,
                "action": r.action,
                "resource_type": r.resource_type,
                "filename": r.filename,
                "rows": r.row_count,
                "committed": r.committed_count,
                "failed": r.failed_count,
                "created_at": r.created_at,
            }
            for r in rows
        ]

    for row in _run(go):
        _echo(row)


@imports.command("purge")
@click.option("--resource-type", default=None)
@click.option("--status", type=click.Choice(["pending", "success", "fail"]), default=None)
@click.pass_obj
def imports_purge(state: CliState, resource_type: str | None, status: str | None) -> None:
    pipeline = ImportPipeline(state.services())

    async def go():
        return await pipeline.purge(resource_type=resource_type, status=status)

    click.echo(f"Purged {_run(go)} record(s)")


def main() -> None:
    cli(prog_name="attributable")


if __name__ == "__main__":
    main()
