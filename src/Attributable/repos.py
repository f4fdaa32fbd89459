# repos.py

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from Attributable import models
from Attributable.metrics import inc_counter

_MAX_ACTIVITY_SUMMARY_LEN = 160
_MAX_ACTIVITY_PAYLOAD_BYTES = 4096


def _clamp_summary(summary: str, *, max_length: int = _MAX_ACTIVITY_SUMMARY_LEN) -> str:
    text = (summary or "").strip()
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def _sanitize_payload(payload: dict[str, Any] | None) -> dict[str, Any]:
    if not payload:
        return {}
    try:
        canonical = json.loads(json.dumps(payload, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        return {"error": "unserializable"}
    encoded = json.dumps(canonical, ensure_ascii=False).encode("utf-8")
    if len(encoded) <= _MAX_ACTIVITY_PAYLOAD_BYTES:
        return canonical
    return {"truncated": True}


async def _flush_retry(s: AsyncSession, attempts: int = 5, delay: float = 0.2) -> None:
    """Retry session.flush() on transient SQLite 'database is locked' errors.

    Exponential backoff: delay * 2^i between attempts.
    """
    for i in range(attempts):
        try:
            await s.flush()
            return
        except OperationalError as e:  # pragma: no cover - timing dependent
            msg = str(e).lower()
            if "database is locked" in msg or "database is busy" in msg:
                if i == attempts - 1:
                    raise
                await asyncio.sleep(delay * (2**i))
                continue
            raise


# -----------------------------
# Attributes
# -----------------------------


async def get_attribute(s: AsyncSession, attribute_id: int) -> models.Attribute | None:
    return await s.get(models.Attribute, attribute_id)


async def list_attributes(s: AsyncSession) -> list[models.Attribute]:
    q = await s.execute(
        select(models.Attribute).order_by(models.Attribute.sort_order, models.Attribute.slug)
    )
    return list(q.scalars().all())


async def list_attributes_by_slug(s: AsyncSession, slug: str) -> list[models.Attribute]:
    q = await s.execute(
        select(models.Attribute).where(models.Attribute.slug == slug).order_by(models.Attribute.id)
    )
    return list(q.scalars().all())


async def list_attribute_groups(s: AsyncSession) -> list[str]:
    q = await s.execute(
        select(models.Attribute.group)
        .where(models.Attribute.group.is_not(None), models.Attribute.group != "")
        .distinct()
    )
    return [row[0] for row in q.all()]


async def insert_attribute(s: AsyncSession, **fields: Any) -> models.Attribute:
    obj = models.Attribute(**fields)
    s.add(obj)
    await _flush_retry(s)
    return obj


async def delete_attribute(s: AsyncSession, obj: models.Attribute) -> None:
    await s.delete(obj)
    await _flush_retry(s)


# -----------------------------
# Attribute values
# -----------------------------


async def list_values(
    s: AsyncSession, *, attribute_id: int, entity_type: str, entity_id: str
) -> list[models.AttributeValue]:
    q = await s.execute(
        select(models.AttributeValue)
        .where(
            models.AttributeValue.attribute_id == attribute_id,
            models.AttributeValue.entity_type == entity_type,
            models.AttributeValue.entity_id == entity_id,
        )
        .order_by(models.AttributeValue.position)
    )
    return list(q.scalars().all())


async def list_entity_values(
    s: AsyncSession, *, entity_type: str, entity_id: str
) -> list[models.AttributeValue]:
    q = await s.execute(
        select(models.AttributeValue)
        .where(
            models.AttributeValue.entity_type == entity_type,
            models.AttributeValue.entity_id == entity_id,
        )
        .order_by(models.AttributeValue.attribute_id, models.AttributeValue.position)
    )
    return list(q.scalars().all())


async def replace_values(
    s: AsyncSession,
    *,
    attribute_id: int,
    entity_type: str,
    entity_id: str,
    value_type: str,
    values: Sequence[Any],
) -> list[models.AttributeValue]:
    """Swap the stored sequence for ``values`` inside the caller's transaction."""
    await s.execute(
        delete(models.AttributeValue).where(
            models.AttributeValue.attribute_id == attribute_id,
            models.AttributeValue.entity_type == entity_type,
            models.AttributeValue.entity_id == entity_id,
        )
    )
    # Flush the delete first so the position unique constraint never sees both rows
    await _flush_retry(s)
    rows = [
        models.AttributeValue(
            attribute_id=attribute_id,
            entity_type=entity_type,
            entity_id=entity_id,
            position=pos,
            value_type=value_type,
            value=value,
        )
        for pos, value in enumerate(values)
    ]
    s.add_all(rows)
    await _flush_retry(s)
    return rows


async def append_values(
    s: AsyncSession,
    *,
    attribute_id: int,
    entity_type: str,
    entity_id: str,
    value_type: str,
    values: Sequence[Any],
) -> list[models.AttributeValue]:
    q = await s.execute(
        select(func.max(models.AttributeValue.position)).where(
            models.AttributeValue.attribute_id == attribute_id,
            models.AttributeValue.entity_type == entity_type,
            models.AttributeValue.entity_id == entity_id,
        )
    )
    last = q.scalar_one_or_none()
    start = 0 if last is None else last + 1
    rows = [
        models.AttributeValue(
            attribute_id=attribute_id,
            entity_type=entity_type,
            entity_id=entity_id,
            position=start + i,
            value_type=value_type,
            value=value,
        )
        for i, value in enumerate(values)
    ]
    s.add_all(rows)
    await _flush_retry(s)
    return rows


async def count_values_for_attribute(
    s: AsyncSession, attribute_id: int, *, entity_types: Sequence[str] | None = None
) -> int:
    stmt = select(func.count(models.AttributeValue.id)).where(
        models.AttributeValue.attribute_id == attribute_id
    )
    if entity_types is not None:
        stmt = stmt.where(models.AttributeValue.entity_type.in_(list(entity_types)))
    q = await s.execute(stmt)
    return int(q.scalar_one())


async def max_values_per_entity(s: AsyncSession, attribute_id: int) -> int:
    """Largest number of stored items any single entity has for an attribute."""
    per_entity = (
        select(func.count(models.AttributeValue.id).label("n"))
        .where(models.AttributeValue.attribute_id == attribute_id)
        .group_by(models.AttributeValue.entity_type, models.AttributeValue.entity_id)
        .subquery()
    )
    q = await s.execute(select(func.max(per_entity.c.n)))
    return int(q.scalar_one_or_none() or 0)


async def list_attribute_values(s: AsyncSession, attribute_id: int) -> list[models.AttributeValue]:
    q = await s.execute(
        select(models.AttributeValue)
        .where(models.AttributeValue.attribute_id == attribute_id)
        .order_by(
            models.AttributeValue.entity_type,
            models.AttributeValue.entity_id,
            models.AttributeValue.position,
        )
    )
    return list(q.scalars().all())


async def delete_values_for_attribute(s: AsyncSession, attribute_id: int) -> int:
    res = await s.execute(
        delete(models.AttributeValue).where(models.AttributeValue.attribute_id == attribute_id)
    )
    await _flush_retry(s)
    return int(res.rowcount or 0)


async def delete_values_for_entity(s: AsyncSession, *, entity_type: str, entity_id: str) -> int:
    res = await s.execute(
        delete(models.AttributeValue).where(
            models.AttributeValue.entity_type == entity_type,
            models.AttributeValue.entity_id == entity_id,
        )
    )
    await _flush_retry(s)
    return int(res.rowcount or 0)


# -----------------------------
# Entities (natural-key registry)
# -----------------------------


async def get_entity_by_key(s: AsyncSession, *, entity_type: str, key: str) -> models.Entity | None:
    q = await s.execute(
        select(models.Entity).where(
            models.Entity.entity_type == entity_type, models.Entity.key == key
        )
    )
    return q.scalar_one_or_none()


async def get_or_create_entity(
    s: AsyncSession, *, entity_type: str, key: str
) -> tuple[models.Entity, bool]:
    obj = await get_entity_by_key(s, entity_type=entity_type, key=key)
    if obj:
        return obj, False
    obj = models.Entity(entity_type=entity_type, key=key)
    s.add(obj)
    await _flush_retry(s)
    return obj, True


async def delete_entity(s: AsyncSession, *, entity_type: str, entity_id: int) -> bool:
    res = await s.execute(
        delete(models.Entity).where(
            models.Entity.entity_type == entity_type, models.Entity.id == entity_id
        )
    )
    await _flush_retry(s)
    return bool(res.rowcount)


# -----------------------------
# Staged import records
# -----------------------------


async def create_import_log(
    s: AsyncSession,
    *,
    action: str,
    resource_type: str,
    filename: str | None = None,
    row_count: int = 0,
    committed_count: int = 0,
    failed_count: int = 0,
    actor_ref: str | None = None,
) -> models.ImportLog:
    obj = models.ImportLog(
        action=action,
        resource_type=resource_type,
        filename=filename,
        row_count=row_count,
        committed_count=committed_count,
        failed_count=failed_count,
        actor_ref=actor_ref,
    )
    s.add(obj)
    await _flush_retry(s)
    return obj


async def list_import_logs(
    s: AsyncSession, *, resource_type: str | None = None, limit: int = 50
) -> list[models.ImportLog]:
    stmt = select(models.ImportLog)
    if resource_type is not None:
        stmt = stmt.where(models.ImportLog.resource_type == resource_type)
    stmt = stmt.order_by(models.ImportLog.id.desc()).limit(limit)
    q = await s.execute(stmt)
    return list(q.scalars().all())


async def insert_import_records(
    s: AsyncSession,
    *,
    resource_type: str,
    rows: Iterable[Mapping[str, str]],
    import_log_id: int | None = None,
) -> list[models.ImportRecord]:
    objs = [
        models.ImportRecord(
            resource_type=resource_type,
            data=dict(row),
            status=models.ImportStatus.pending,
            import_log_id=import_log_id,
        )
        for row in rows
    ]
    s.add_all(objs)
    await _flush_retry(s)
    return objs


async def get_import_record(s: AsyncSession, record_id: int) -> models.ImportRecord | None:
    # Refresh rows a conditional UPDATE in this session may have expired
    return await s.get(models.ImportRecord, record_id, populate_existing=True)


async def list_import_records(
    s: AsyncSession,
    *,
    resource_type: str | None = None,
    status: models.ImportStatus | None = None,
    ids: Sequence[int] | None = None,
) -> list[models.ImportRecord]:
    stmt = select(models.ImportRecord)
    if resource_type is not None:
        stmt = stmt.where(models.ImportRecord.resource_type == resource_type)
    if status is not None:
        stmt = stmt.where(models.ImportRecord.status == status)
    if ids is not None:
        stmt = stmt.where(models.ImportRecord.id.in_(list(ids)))
    q = await s.execute(
        stmt.order_by(models.ImportRecord.id).execution_options(populate_existing=True)
    )
    return list(q.scalars().all())


async def delete_unfinished_import_record(s: AsyncSession, record_id: int) -> bool:
    """Delete a record still awaiting commit. False when it is gone or already committed."""
    res = await s.execute(
        delete(models.ImportRecord).where(
            models.ImportRecord.id == record_id,
            models.ImportRecord.status != models.ImportStatus.success,
        )
    )
    await _flush_retry(s)
    return bool(res.rowcount)


async def set_import_record_status(
    s: AsyncSession,
    record_id: int,
    *,
    status: models.ImportStatus,
    append_notes: str | None = None,
    only_unfinished: bool = True,
) -> bool:
    """Conditional status transition; the rowcount decides who won.

    ``append_notes`` is concatenated onto the stored notes in SQL so earlier
    notes are never overwritten.
    """
    stmt = update(models.ImportRecord).where(models.ImportRecord.id == record_id)
    if only_unfinished:
        stmt = stmt.where(models.ImportRecord.status != models.ImportStatus.success)
    values: dict[str, Any] = {"status": status}
    if append_notes is not None:
        values["notes"] = func.coalesce(models.ImportRecord.notes, "") + append_notes
    res = await s.execute(stmt.values(**values).execution_options(synchronize_session="fetch"))
    await _flush_retry(s)
    return bool(res.rowcount)


async def delete_import_records(
    s: AsyncSession, *, resource_type: str | None = None, status: models.ImportStatus | None = None
) -> int:
    stmt = delete(models.ImportRecord)
    if resource_type is not None:
        stmt = stmt.where(models.ImportRecord.resource_type == resource_type)
    if status is not None:
        stmt = stmt.where(models.ImportRecord.status == status)
    res = await s.execute(stmt)
    await _flush_retry(s)
    return int(res.rowcount or 0)


# -----------------------------
# Activity trail
# -----------------------------


async def create_activity_log(
    s: AsyncSession,
    *,
    actor_ref: str | None,
    subject_type: str,
    subject_id: str,
    event_type: str,
    summary: str,
    payload: dict[str, Any] | None = None,
) -> models.ActivityLog:
    obj = models.ActivityLog(
        actor_ref=actor_ref,
        subject_type=subject_type,
        subject_id=subject_id,
        event_type=event_type,
        summary=_clamp_summary(summary),
        payload=_sanitize_payload(payload),
    )
    s.add(obj)
    await _flush_retry(s)
    inc_counter("activity_log.created")
    return obj


async def list_activity_logs(
    s: AsyncSession, *, subject_type: str, subject_id: str, limit: int = 100
) -> list[models.ActivityLog]:
    q = await s.execute(
        select(models.ActivityLog)
        .where(
            models.ActivityLog.subject_type == subject_type,
            models.ActivityLog.subject_id == subject_id,
        )
        .order_by(models.ActivityLog.id.desc())
        .limit(limit)
    )
    return list(q.scalars().all())


async def save(s: AsyncSession) -> None:
    await _flush_retry(s)
