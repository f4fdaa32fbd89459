import io

from Attributable.db import session_scope
from Attributable.metrics import (
    get_counter,
    get_counters,
    inc_counter,
    observe_histogram,
    reset_counters,
)


def test_counters_and_histogram_buckets():
    inc_counter("importer.hoard.committed")
    inc_counter("importer.hoard.committed", 2)
    observe_histogram("importer.hoard.ms", 3)
    observe_histogram("importer.hoard.ms", 7000)

    counters = get_counters()
    assert counters["importer.hoard.committed"] == 3
    assert counters["histo.importer.hoard.ms.le_5"] == 1
    assert counters["histo.importer.hoard.ms.gt_5000"] == 1
    assert counters["histo.importer.hoard.ms.sum"] == 7003
    assert counters["histo.importer.hoard.ms.count"] == 2

    reset_counters()
    assert get_counter("importer.hoard.committed") == 0
    assert get_counters() == {}


def test_histogram_bounds_are_inclusive_and_fixed_on_first_use():
    observe_histogram("stash.rows", 10, buckets=[100, 10])
    observe_histogram("stash.rows", 11)
    observe_histogram("stash.rows", 500, buckets=[1000])

    counters = get_counters()
    assert counters["histo.stash.rows.le_10"] == 1
    assert counters["histo.stash.rows.le_100"] == 1
    assert counters["histo.stash.rows.gt_100"] == 1
    assert "histo.stash.rows.le_1000" not in counters


async def test_hoard_emits_counters(services, pipeline):
    async with session_scope() as s:
        await services.definitions.create(
            s, {"name": "Stock", "type": "integer", "entities": ["product"]}
        )
    result = await pipeline.stash(io.StringIO("key,stock\na,1\nb,x\n"), "product")
    await pipeline.hoard(result.record_ids)

    counters = get_counters()
    assert counters["importer.hoard.committed"] == 1
    assert counters["importer.hoard.failed"] == 1
    assert counters["locks.mode.inproc"] == 2
    assert counters["histo.importer.hoard.ms.count"] == 1
