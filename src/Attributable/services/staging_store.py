from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from Attributable import models, repos
from Attributable.errors import NotFound, PersistenceConflict
from Attributable.metrics import inc_counter

log = structlog.get_logger()

# Separates successive failure notes on one record
NOTE_TERMINATOR = "\n\n"


class ImportStagingStore:
    """Persistence for staged raw import rows.

    Committed rows are deleted, or kept with status ``success`` when
    ``archive_success`` is on. Status transitions are conditional so a record
    is never committed twice.
    """

    def __init__(self, *, archive_success: bool = False):
        self.archive_success = archive_success

    async def stage_rows(
        self,
        s: AsyncSession,
        resource_type: str,
        rows: Iterable[Mapping[str, str]],
        *,
        import_log_id: int | None = None,
    ) -> list[models.ImportRecord]:
        objs = await repos.insert_import_records(
            s, resource_type=resource_type, rows=rows, import_log_id=import_log_id
        )
        inc_counter("importer.staged", len(objs))
        return objs

    async def find(self, s: AsyncSession, record_id: int) -> models.ImportRecord:
        obj = await repos.get_import_record(s, record_id)
        if obj is None:
            raise NotFound("import record", record_id)
        return obj

    async def find_many(
        self, s: AsyncSession, record_ids: Sequence[int]
    ) -> dict[int, models.ImportRecord]:
        objs = await repos.list_import_records(s, ids=record_ids)
        return {obj.id: obj for obj in objs}

    async def mark_success(self, s: AsyncSession, record_id: int) -> None:
        if self.archive_success:
            ok = await repos.set_import_record_status(
                s, record_id, status=models.ImportStatus.success
            )
        else:
            ok = await repos.delete_unfinished_import_record(s, record_id)
        if not ok:
            raise PersistenceConflict(f"Import record {record_id} is gone or already committed")

    async def mark_failed(self, s: AsyncSession, record_id: int, note: str) -> None:
        ok = await repos.set_import_record_status(
            s,
            record_id,
            status=models.ImportStatus.fail,
            append_notes=note.rstrip("\n") + NOTE_TERMINATOR,
        )
        if not ok:
            raise PersistenceConflict(f"Import record {record_id} is gone or already committed")

    async def list_records(
        self,
        s: AsyncSession,
        *,
        resource_type: str | None = None,
        status: models.ImportStatus | str | None = None,
    ) -> list[models.ImportRecord]:
        if isinstance(status, str):
            status = models.ImportStatus(status)
        return await repos.list_import_records(s, resource_type=resource_type, status=status)

    async def purge(
        self,
        s: AsyncSession,
        *,
        resource_type: str | None = None,
        status: models.ImportStatus | str | None = None,
    ) -> int:
        if isinstance(status, str):
            status = models.ImportStatus(status)
        count = await repos.delete_import_records(s, resource_type=resource_type, status=status)
        log.info("importer.staging.purged", resource_type=resource_type, count=count)
        return count
