"""Process-local counters and latency histograms for the stores and importer.

Everything lives in module state and is reset between tests. ``get_counters``
folds histograms into the same flat mapping under ``histo.<name>.*`` keys.
"""

from __future__ import annotations

from bisect import bisect_left
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field

# Upper bounds in milliseconds; values past the last bound land in gt_<last>
DEFAULT_MS_BUCKETS = (1, 2, 5, 10, 20, 50, 100, 250, 500, 1000, 2000, 5000)


@dataclass
class _Histogram:
    bounds: tuple[int, ...]
    hits: Counter[str] = field(default_factory=Counter)
    total: int = 0
    samples: int = 0

    def observe(self, value: int) -> None:
        idx = bisect_left(self.bounds, value)
        label = f"le_{self.bounds[idx]}" if idx < len(self.bounds) else f"gt_{self.bounds[-1]}"
        self.hits[label] += 1
        self.total += value
        self.samples += 1

    def flatten(self, name: str) -> dict[str, int]:
        out = {f"histo.{name}.{label}": n for label, n in self.hits.items()}
        out[f"histo.{name}.sum"] = self.total
        out[f"histo.{name}.count"] = self.samples
        return out


_counters: Counter[str] = Counter()
_histograms: dict[str, _Histogram] = {}


def inc_counter(name: str, value: int = 1) -> None:
    _counters[name] += int(value)


def get_counter(name: str) -> int:
    return _counters[name]


def reset_counters() -> None:
    _counters.clear()
    _histograms.clear()


def get_counters() -> dict[str, int]:
    out = dict(_counters)
    for name, histogram in _histograms.items():
        out.update(histogram.flatten(name))
    return out


def observe_histogram(name: str, value: int, *, buckets: Sequence[int] | None = None) -> None:
    """Count ``value`` into the first bucket whose bound is >= it.

    The bucket bounds are fixed by the first observation of ``name``.
    """
    histogram = _histograms.get(name)
    if histogram is None:
        bounds = tuple(sorted(buckets)) if buckets else DEFAULT_MS_BUCKETS
        histogram = _histograms[name] = _Histogram(bounds)
    histogram.observe(int(value))
