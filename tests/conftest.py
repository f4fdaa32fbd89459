# tests/conftest.py

import os
from collections.abc import AsyncIterator
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

# Point the app at a process-local in-memory DB before any app module reads settings.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LOGGING_ENABLED"] = "false"

import Attributable.db as _db  # noqa: E402
from Attributable import models as _models  # noqa: F401,E402
from Attributable.config import Settings  # noqa: E402
from Attributable.db import Base  # noqa: E402
from Attributable.importer import ImportPipeline  # noqa: E402
from Attributable.metrics import reset_counters  # noqa: E402
from Attributable.services.wiring import Services, build_services  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
ENTITY_TYPES = ["product", "customer"]


class RecordingAuditLog:
    """AuditLog collaborator that keeps every record for assertions."""

    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []

    def record(self, actor, entity_kind, entity_id, before, after) -> None:
        self.records.append(
            {
                "actor": actor,
                "entity_kind": entity_kind,
                "entity_id": entity_id,
                "before": dict(before),
                "after": dict(after),
            }
        )


# Each test gets a fresh engine (and so a fresh in-memory database) bound to its
# own event loop. CLI tests run their own loops against a file database and opt
# out with the `cli` marker.
@pytest.fixture(autouse=True)
async def _fresh_db(request) -> AsyncIterator[None]:
    reset_counters()
    if request.node.get_closest_marker("cli"):
        yield None
        return
    _db.DATABASE_URL = TEST_DATABASE_URL
    await _db.dispose_engine()
    engine = _db.get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    _db._schema_initialized = True
    try:
        yield None
    finally:
        await _db.dispose_engine()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        entity_types=ENTITY_TYPES,
        logging_enabled=False,
        import_chunk_size=2,
    )


@pytest.fixture
def audit_log() -> RecordingAuditLog:
    return RecordingAuditLog()


@pytest.fixture
def services(settings: Settings, audit_log: RecordingAuditLog) -> Services:
    return build_services(settings, audit=audit_log)


@pytest.fixture
def pipeline(services: Services) -> ImportPipeline:
    return ImportPipeline(services)


@pytest.fixture
async def db() -> AsyncIterator[AsyncSession]:
    sm = _db.get_sessionmaker()
    async with sm() as s:
        try:
            yield s
        finally:
            await s.rollback()
            await s.close()
