from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Protocol

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from Attributable import repos
from Attributable.metrics import inc_counter

log = structlog.get_logger()

# Definition fields whose changes are audited; timestamps are ignored
WATCHED_ATTRIBUTE_FIELDS = (
    "name",
    "slug",
    "description",
    "sort_order",
    "group",
    "type",
    "entities",
    "is_required",
    "is_collection",
    "default",
    "options",
)

_MISSING = object()


class AuditLog(Protocol):
    """External collaborator receiving before/after snapshots of mutations."""

    def record(
        self,
        actor: str | None,
        entity_kind: str,
        entity_id: str,
        before: Mapping[str, Any],
        after: Mapping[str, Any],
    ) -> None:
        ...


class NullAuditLog:
    def record(self, actor, entity_kind, entity_id, before, after) -> None:
        return None


class StructlogAuditLog:
    """Default collaborator: one structured log line per mutation."""

    def record(self, actor, entity_kind, entity_id, before, after) -> None:
        log.info(
            "audit.record",
            actor=actor,
            entity_kind=entity_kind,
            entity_id=entity_id,
            before=dict(before),
            after=dict(after),
        )


def snapshot(obj: Any, fields: Iterable[str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in fields:
        value = getattr(obj, name, None)
        if isinstance(value, list):
            value = list(value)
        out[name] = value
    return out


def dirty_diff(
    before: Mapping[str, Any], after: Mapping[str, Any]
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Keep only the keys whose value changed, on both sides."""
    old: dict[str, Any] = {}
    new: dict[str, Any] = {}
    for key in list(before) + [k for k in after if k not in before]:
        b = before.get(key, _MISSING)
        a = after.get(key, _MISSING)
        if b == a:
            continue
        if b is not _MISSING:
            old[key] = b
        if a is not _MISSING:
            new[key] = a
    return old, new


# Pending collaborator records live on the sync session until it commits
_PENDING_KEY = "attributable.audit.pending"


def _deliver(session: Session) -> None:
    pending = session.info.pop(_PENDING_KEY, [])
    for auditor, args in pending:
        auditor._emit(*args)


def _discard(session: Session) -> None:
    dropped = session.info.pop(_PENDING_KEY, [])
    if dropped:
        inc_counter("audit.discarded", len(dropped))


class Auditor:
    """Emits dirty-only audit records for store mutations.

    The activity row (when ``persist_activity`` is on) is written inside the
    caller's transaction. The collaborator only hears about a mutation once
    that transaction commits; a rollback drops the queued records. Delivery
    is fire-and-forget: collaborator failures are logged and never reach the
    caller.
    """

    def __init__(self, audit: AuditLog | None = None, *, persist_activity: bool = True):
        self.audit = audit if audit is not None else StructlogAuditLog()
        self.persist_activity = persist_activity

    async def mutation(
        self,
        s: AsyncSession,
        *,
        actor: str | None,
        entity_kind: str,
        entity_id: str | int,
        event_type: str,
        before: Mapping[str, Any],
        after: Mapping[str, Any],
    ) -> bool:
        old, new = dirty_diff(before, after)
        if not old and not new:
            inc_counter("audit.skipped_clean")
            return False
        entity_id = str(entity_id)
        if self.persist_activity:
            await repos.create_activity_log(
                s,
                actor_ref=actor,
                subject_type=entity_kind,
                subject_id=entity_id,
                event_type=event_type,
                summary=f"{entity_kind} {entity_id} {event_type}: {', '.join(sorted(set(old) | set(new)))}",
                payload={"old": old, "attributes": new},
            )
        self._queue(s, (actor, entity_kind, entity_id, old, new))
        return True

    def _queue(self, s: AsyncSession, args: tuple[Any, ...]) -> None:
        session = s.sync_session
        if not event.contains(session, "after_commit", _deliver):
            event.listen(session, "after_commit", _deliver)
            event.listen(session, "after_rollback", _discard)
        session.info.setdefault(_PENDING_KEY, []).append((self, args))

    def _emit(self, actor, entity_kind, entity_id, old, new) -> None:
        try:
            self.audit.record(actor, entity_kind, entity_id, old, new)
        except Exception:
            inc_counter("audit.record_failed")
            log.warning(
                "audit.record_failed",
                entity_kind=entity_kind,
                entity_id=entity_id,
                exc_info=True,
            )
            return
        inc_counter("audit.recorded")
