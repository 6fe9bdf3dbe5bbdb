"""Ordering of instant-query results for sort, sort_by_label, topk and bottomk."""

from __future__ import annotations

import enum
import math
import re
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Any, Callable, Optional, Sequence

from stepagg.tables import Labels, to_labels

_CHUNK = re.compile(r"[0-9]+|[^0-9]+")
_DIGITS = re.compile(r"[0-9]+")
_INT64_MAX = 2**63 - 1


class SortOrder(enum.Enum):
    """Direction of a result ordering."""

    ASC = "asc"
    DESC = "desc"


@dataclass
class Sample:
    """One element of an instant vector."""

    metric: Labels
    f: float = 0.0
    t: int = 0
    h: Any = None

    def __post_init__(self) -> None:
        self.metric = to_labels(self.metric)


def _as_int(chunk: str) -> Optional[int]:
    if not _DIGITS.fullmatch(chunk):
        return None
    value = int(chunk)
    return value if value <= _INT64_MAX else None


def natural_less(a: str, b: str) -> bool:
    """Report whether ``a`` precedes ``b`` in natural order (digit runs as numbers)."""
    chunks_a = _CHUNK.findall(a)
    chunks_b = _CHUNK.findall(b)
    last_a = len(chunks_a) - 1
    last_b = len(chunks_b) - 1
    for i, chunk_a in enumerate(chunks_a):
        if i > last_b:
            return False
        chunk_b = chunks_b[i]
        int_a = _as_int(chunk_a)
        int_b = _as_int(chunk_b)
        if int_a is not None and int_b is not None:
            if int_a != int_b:
                return int_a < int_b
        elif chunk_a != chunk_b:
            return chunk_a < chunk_b
        if i == last_a:
            return True
        if i == last_b:
            return False
    return False


def labels_compare(a: Labels, b: Labels) -> int:
    """Compare two sorted label sets; negative, zero or positive like a cmp function."""
    for (name_a, value_a), (name_b, value_b) in zip(a, b):
        if name_a != name_b:
            return -1 if name_a < name_b else 1
        if value_a != value_b:
            return -1 if value_a < value_b else 1
    return len(a) - len(b)


def value_less(order: SortOrder, left: float, right: float) -> bool:
    """Order floats in the given direction, with NaN after everything else."""
    if math.isnan(right):
        return True
    if order is SortOrder.ASC:
        return left < right
    return left > right


def _sorted_by(
    samples: Sequence[Sample], less: Callable[[Sample, Sample], bool]
) -> list[Sample]:
    def cmp(a: Sample, b: Sample) -> int:
        if less(a, b):
            return -1
        if less(b, a):
            return 1
        return 0

    return sorted(samples, key=cmp_to_key(cmp))


@dataclass(frozen=True)
class NoSortResultSort:
    """Leaves results in the order they were produced."""

    def sort(self, samples: Sequence[Sample]) -> list[Sample]:
        return list(samples)


@dataclass(frozen=True)
class SortFuncResultSort:
    """Orders results by value, as sort() and sort_desc() do."""

    order: SortOrder = SortOrder.ASC

    def sort(self, samples: Sequence[Sample]) -> list[Sample]:
        return _sorted_by(samples, lambda a, b: value_less(self.order, a.f, b.f))


@dataclass(frozen=True)
class SortByLabelResultSort:
    """Orders results naturally by the given labels, then by the full label set."""

    sorting_labels: Sequence[str] = ()
    order: SortOrder = SortOrder.ASC

    def __post_init__(self) -> None:
        object.__setattr__(self, "sorting_labels", tuple(self.sorting_labels))

    def _less(self, a: Sample, b: Sample) -> bool:
        labels_a = dict(a.metric)
        labels_b = dict(b.metric)
        asc = self.order is SortOrder.ASC
        for name in self.sorting_labels:
            value_a = labels_a.get(name, "")
            value_b = labels_b.get(name, "")
            if value_a == value_b:
                continue
            return asc if natural_less(value_a, value_b) else not asc
        if labels_compare(a.metric, b.metric) < 0:
            return asc
        return not asc

    def sort(self, samples: Sequence[Sample]) -> list[Sample]:
        return _sorted_by(samples, self._less)


@dataclass(frozen=True)
class AggregateResultSort:
    """Orders topk/bottomk results by group labels, then by value."""

    sorting_labels: Sequence[str] = ()
    group_by: bool = True
    order: SortOrder = SortOrder.ASC

    def __post_init__(self) -> None:
        object.__setattr__(self, "sorting_labels", tuple(self.sorting_labels))

    def _key(self, metric: Labels) -> Labels:
        names = set(self.sorting_labels)
        if self.group_by:
            return tuple(pair for pair in metric if pair[0] in names)
        return tuple(pair for pair in metric if pair[0] not in names)

    def _less(self, a: Sample, b: Sample) -> bool:
        cmp = labels_compare(self._key(a.metric), self._key(b.metric))
        if cmp != 0:
            return cmp < 0
        return value_less(self.order, a.f, b.f)

    def sort(self, samples: Sequence[Sample]) -> list[Sample]:
        return _sorted_by(samples, self._less)


def result_sort_for_call(name: str, sorting_labels: Sequence[str] = ()):
    """Return the result ordering implied by a top-level function call."""
    if name == "sort":
        return SortFuncResultSort(SortOrder.ASC)
    if name == "sort_desc":
        return SortFuncResultSort(SortOrder.DESC)
    if name == "sort_by_label":
        return SortByLabelResultSort(sorting_labels, SortOrder.ASC)
    if name == "sort_by_label_desc":
        return SortByLabelResultSort(sorting_labels, SortOrder.DESC)
    return NoSortResultSort()


def result_sort_for_aggregate(op: str, grouping: Sequence[str], without: bool):
    """Return the result ordering implied by a top-level aggregation."""
    if op == "topk":
        return AggregateResultSort(grouping, not without, SortOrder.DESC)
    if op == "bottomk":
        return AggregateResultSort(grouping, not without, SortOrder.ASC)
    return NoSortResultSort()