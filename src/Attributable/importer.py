"""Staged bulk import: stash a delimited file, then hoard selected rows.

Stash parses the whole file before anything is written, so a structural
problem (empty file, bad header, ragged row) stages nothing. Valid rows are
staged in chunks, each chunk in its own transaction.

Hoard commits a selection of staged rows one at a time. Every row gets its own
transaction: the target is found or created by natural key under a per-key
lock, the fillable fields are written, and the staged row is marked committed.
A failing row is rolled back and its staged record is set to ``fail`` with the
reason appended to its notes; the remaining rows carry on.
"""

from __future__ import annotations

import asyncio
import csv
import os
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from Attributable import models, repos
from Attributable.db import session_scope, shares_one_connection
from Attributable.errors import (
    NotFound,
    ParseError,
    PersistenceConflict,
    SchemaMismatch,
    ValidationError,
    describe_failure,
    from_pydantic,
)
from Attributable.metrics import inc_counter, observe_histogram
from Attributable.schemas import DEFINITION_FIELDS, HoardSummary, StashResult
from Attributable.services.definition_store import slugify
from Attributable.services.lock_service import KeyLocks
from Attributable.services.wiring import Services

log = structlog.get_logger()

ATTRIBUTE_RESOURCE = "attribute"

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


@dataclass(frozen=True)
class ImportResource:
    """What a hoard may write for one resource type."""

    name: str
    kind: str  # "attribute" or "entity"
    fillable: tuple[str, ...]
    natural_key: str

    def fill(self, data: Mapping[str, Any]) -> dict[str, Any]:
        # Columns outside the fillable set are dropped silently
        return {k: v for k, v in data.items() if k in self.fillable}

    def key_for(self, data: Mapping[str, Any]) -> str:
        if self.kind == ATTRIBUTE_RESOURCE:
            slug = str(data.get("slug") or "").strip()
            return slug or slugify(str(data.get("name") or ""))
        return str(data.get(self.natural_key) or "").strip()


def _check_header(header: Sequence[str], line: int) -> None:
    seen: set[str] = set()
    for idx, name in enumerate(header, start=1):
        if not name:
            raise ParseError(f"Blank header name in column {idx}", line=line)
        if name in seen:
            raise ParseError(f"Duplicate header name {name!r}", line=line)
        seen.add(name)


def parse_delimited(
    fh: TextIO, *, delimiter: str = ",", max_rows: int | None = None
) -> list[dict[str, str]]:
    """Read a header row plus data rows; blank lines are skipped.

    Raises ParseError carrying the offending line for an empty file, a blank or
    duplicate header, or a row whose cell count differs from the header.
    """
    reader = csv.reader(fh, delimiter=delimiter)
    header: list[str] | None = None
    rows: list[dict[str, str]] = []
    try:
        for cells in reader:
            if not any(c.strip() for c in cells):
                continue
            if header is None:
                header = [c.strip() for c in cells]
                _check_header(header, reader.line_num)
                continue
            if len(cells) != len(header):
                raise ParseError(
                    f"Expected {len(header)} cells, found {len(cells)}", line=reader.line_num
                )
            if max_rows is not None and len(rows) >= max_rows:
                raise ParseError(f"More than {max_rows} rows", line=reader.line_num)
            rows.append(dict(zip(header, cells)))
    except csv.Error as exc:
        raise ParseError(f"Malformed delimited text: {exc}", line=reader.line_num) from exc
    except UnicodeDecodeError as exc:
        raise ParseError(f"Cannot decode file: {exc.reason}", line=reader.line_num + 1) from exc
    if header is None:
        raise ParseError("File is empty", line=1)
    return rows


def _failure(exc: Exception) -> Exception:
    if isinstance(exc, IntegrityError):
        return PersistenceConflict(f"Conflicting write: {exc.orig}")
    if isinstance(exc, PydanticValidationError):
        return from_pydantic(exc)
    return exc


class ImportPipeline:
    def __init__(
        self,
        services: Services,
        *,
        session_factory: SessionFactory | None = None,
        locks: KeyLocks | None = None,
    ):
        self.settings = services.settings
        self.definitions = services.definitions
        self.values = services.values
        self.staging = services.staging
        self.resolver = services.resolver
        self._session_factory = session_factory or session_scope
        self.locks = locks or KeyLocks()

    # ---- stash --------------------------------------------------------

    def _delimiter_for(self, name: str | None) -> str:
        if name and name.lower().endswith(".tsv"):
            return "\t"
        return self.settings.import_delimiter

    def read(
        self,
        source: str | os.PathLike[str] | TextIO,
        *,
        filename: str | None = None,
        delimiter: str | None = None,
    ) -> tuple[list[dict[str, str]], str | None]:
        max_rows = self.settings.import_max_rows
        if hasattr(source, "read"):
            name = filename or getattr(source, "name", None)
            name = name if isinstance(name, str) else None
            rows = parse_delimited(
                source,  # type: ignore[arg-type]
                delimiter=delimiter or self._delimiter_for(name),
                max_rows=max_rows,
            )
            return rows, name
        path = Path(source)
        try:
            with path.open(encoding=self.settings.import_encoding, newline="") as fh:
                rows = parse_delimited(
                    fh, delimiter=delimiter or self._delimiter_for(path.name), max_rows=max_rows
                )
        except OSError as exc:
            raise ParseError(f"Cannot read {path}: {exc.strerror or exc}") from exc
        return rows, filename or path.name

    async def stash(
        self,
        source: str | os.PathLike[str] | TextIO,
        resource_type: str,
        *,
        filename: str | None = None,
        delimiter: str | None = None,
        actor: str | None = None,
    ) -> StashResult:
        resource_type = (resource_type or "").strip()
        if not resource_type:
            raise ValidationError.for_field("resource_type", "is required")
        started = time.perf_counter()
        try:
            rows, name = self.read(source, filename=filename, delimiter=delimiter)
        except ParseError as exc:
            inc_counter("importer.stash.parse_error")
            log.warning("importer.stash.parse_error", resource_type=resource_type, error=str(exc))
            raise

        async with self._session_factory() as s:
            ilog = await repos.create_import_log(
                s,
                action="stash",
                resource_type=resource_type,
                filename=name,
                row_count=len(rows),
                actor_ref=actor,
            )
            import_log_id = ilog.id

        record_ids: list[int] = []
        chunk = self.settings.import_chunk_size
        for offset in range(0, len(rows), chunk):
            async with self._session_factory() as s:
                objs = await self.staging.stage_rows(
                    s, resource_type, rows[offset : offset + chunk], import_log_id=import_log_id
                )
                record_ids.extend(obj.id for obj in objs)

        inc_counter("importer.stash.rows", len(record_ids))
        observe_histogram("importer.stash.ms", int((time.perf_counter() - started) * 1000))
        log.info(
            "importer.stash.completed",
            resource_type=resource_type,
            filename=name,
            rows=len(record_ids),
            import_log_id=import_log_id,
        )
        return StashResult(
            import_log_id=import_log_id,
            resource_type=resource_type,
            filename=name,
            record_ids=record_ids,
        )

    # ---- hoard --------------------------------------------------------

    async def resource_for(self, s: AsyncSession, resource_type: str) -> ImportResource:
        if resource_type == ATTRIBUTE_RESOURCE:
            return ImportResource(ATTRIBUTE_RESOURCE, ATTRIBUTE_RESOURCE, DEFINITION_FIELDS, "slug")
        if resource_type in self.definitions.entity_types():
            key = self.settings.import_natural_key
            slugs = [a.slug for a in await self.definitions.find_by_entity_type(s, resource_type)]
            return ImportResource(resource_type, "entity", tuple(dict.fromkeys([key, *slugs])), key)
        raise SchemaMismatch(resource_type)

    async def _apply_attribute(
        self, s: AsyncSession, data: Mapping[str, Any], *, actor: str | None
    ) -> None:
        # Blank cells leave the stored field untouched
        fields = {k: v for k, v in data.items() if v is not None and str(v).strip()}
        slug = ImportResource(ATTRIBUTE_RESOURCE, ATTRIBUTE_RESOURCE, (), "slug").key_for(fields)
        if not slug:
            raise ValidationError.for_field("slug", "is required")
        fields["slug"] = slug
        entities = {
            e.strip()
            for e in str(fields.get("entities", "")).replace(",", "|").split("|")
            if e.strip()
        }
        target = None
        for candidate in await self.definitions.list_by_slug(s, slug):
            if not entities or entities & set(candidate.entities or []):
                target = candidate
                break
        if target is None:
            await self.definitions.create(s, fields, actor=actor)
        else:
            fields.pop("slug")
            await self.definitions.update(s, target.id, fields, actor=actor)

    async def _apply_entity(
        self,
        s: AsyncSession,
        resource: ImportResource,
        data: Mapping[str, Any],
        *,
        actor: str | None,
    ) -> None:
        key = str(data.get(resource.natural_key) or "").strip()
        if not key:
            raise ValidationError.for_field(resource.natural_key, "is required")
        entity_id, _created = await self.resolver.find_or_create(s, resource.name, key)
        errors: dict[str, list[str]] = {}
        for slug, raw in data.items():
            if slug == resource.natural_key:
                continue
            try:
                await self.values.set(s, resource.name, entity_id, slug, raw, actor=actor)
            except ValidationError as exc:
                for field, reasons in (exc.errors or {slug: [str(exc)]}).items():
                    errors.setdefault(field, []).extend(reasons)
        for slug in await self.values.missing_required(s, resource.name, entity_id):
            errors.setdefault(slug, ["is required"])
        if errors:
            raise ValidationError(
                f"Invalid {resource.name} row {key!r}: {', '.join(sorted(errors))}", errors
            )

    async def _record_failure(self, record_id: int, note: str) -> None:
        try:
            async with self._session_factory() as s:
                await self.staging.mark_failed(s, record_id, note)
        except PersistenceConflict:
            log.warning("importer.hoard.mark_failed_skipped", record_id=record_id)

    async def _hoard_one(
        self,
        record_id: int,
        lock_key: str,
        resources: Mapping[str, ImportResource],
        summary: HoardSummary,
        *,
        actor: str | None,
    ) -> None:
        async with self.locks.hold(lock_key):
            try:
                async with self._session_factory() as s:
                    await self.locks.advisory(s, lock_key)
                    record = await self.staging.find(s, record_id)
                    resource = resources.get(record.resource_type)
                    if resource is None:
                        raise SchemaMismatch(record.resource_type)
                    data = resource.fill(record.data or {})
                    if resource.kind == ATTRIBUTE_RESOURCE:
                        await self._apply_attribute(s, data, actor=actor)
                    else:
                        await self._apply_entity(s, resource, data, actor=actor)
                    await self.staging.mark_success(s, record_id)
            except Exception as exc:
                failure = _failure(exc)
                note = describe_failure(failure)
                summary.failed[record_id] = note
                inc_counter("importer.hoard.failed")
                log.warning(
                    "importer.hoard.row_failed",
                    record_id=record_id,
                    error_type=type(failure).__name__,
                    error=str(failure),
                )
                await self._record_failure(record_id, note)
                return
        summary.committed.append(record_id)
        inc_counter("importer.hoard.committed")

    async def hoard(self, ids: Iterable[int], *, actor: str | None = None) -> HoardSummary:
        selected = list(dict.fromkeys(int(i) for i in ids))
        summary = HoardSummary()
        if not selected:
            return summary
        started = time.perf_counter()

        async with self._session_factory() as s:
            records = await self.staging.find_many(s, selected)
            single_connection = shares_one_connection(s.get_bind())
            resources: dict[str, ImportResource] = {}
            for resource_type in dict.fromkeys(r.resource_type for r in records.values()):
                try:
                    resources[resource_type] = await self.resource_for(s, resource_type)
                except SchemaMismatch:
                    # Reported per row, with the staged record marked failed
                    continue

        plan: list[tuple[int, str]] = []
        for record_id in selected:
            record = records.get(record_id)
            if record is None:
                summary.failed[record_id] = str(NotFound("import record", record_id))
                continue
            if record.status == models.ImportStatus.success:
                summary.failed[record_id] = f"Import record {record_id} is already committed"
                continue
            resource = resources.get(record.resource_type)
            natural = resource.key_for(record.data or {}) if resource else ""
            plan.append((record_id, f"{record.resource_type}:{natural or f'#{record_id}'}"))

        concurrency = self.settings.import_hoard_concurrency
        if concurrency > 1 and single_connection:
            # One shared connection cannot hold several row transactions apart
            inc_counter("importer.hoard.serialized")
            log.info("importer.hoard.serialized", requested_concurrency=concurrency)
            concurrency = 1
        if concurrency <= 1:
            for record_id, lock_key in plan:
                await self._hoard_one(record_id, lock_key, resources, summary, actor=actor)
        else:
            # Same-key rows stay in one group and keep their selection order
            groups: dict[str, list[int]] = {}
            for record_id, lock_key in plan:
                groups.setdefault(lock_key, []).append(record_id)
            sem = asyncio.Semaphore(concurrency)

            async def run_group(lock_key: str, record_ids: list[int]) -> None:
                async with sem:
                    for record_id in record_ids:
                        await self._hoard_one(record_id, lock_key, resources, summary, actor=actor)

            await asyncio.gather(*(run_group(k, ids_) for k, ids_ in groups.items()))

        resource_types = sorted({r.resource_type for r in records.values()}) or ["unknown"]
        async with self._session_factory() as s:
            ilog = await repos.create_import_log(
                s,
                action="hoard",
                resource_type=",".join(resource_types)[:64],
                row_count=len(selected),
                committed_count=summary.committed_count,
                failed_count=summary.failed_count,
                actor_ref=actor,
            )
            summary.import_log_id = ilog.id

        observe_histogram("importer.hoard.ms", int((time.perf_counter() - started) * 1000))
        log.info(
            "importer.hoard.completed",
            selected=len(selected),
            committed=summary.committed_count,
            failed=summary.failed_count,
            import_log_id=summary.import_log_id,
        )
        return summary

    # ---- listings -----------------------------------------------------

    async def staged(
        self,
        *,
        resource_type: str | None = None,
        status: models.ImportStatus | str | None = None,
    ) -> list[models.ImportRecord]:
        async with self._session_factory() as s:
            return await self.staging.list_records(s, resource_type=resource_type, status=status)

    async def import_logs(
        self, *, resource_type: str | None = None, limit: int = 50
    ) -> list[models.ImportLog]:
        async with self._session_factory() as s:
            return await repos.list_import_logs(s, resource_type=resource_type, limit=limit)

    async def purge(
        self,
        *,
        resource_type: str | None = None,
        status: models.ImportStatus | str | None = None,
    ) -> int:
        async with self._session_factory() as s:
            return await self.staging.purge(s, resource_type=resource_type, status=status)
