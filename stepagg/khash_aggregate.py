"""Top-k and bottom-k aggregation operator."""

from __future__ import annotations

import heapq
import math
from typing import Callable, Optional, Sequence

from stepagg.accumulators import IGNORED_HISTOGRAM_INFO, Warnings
from stepagg.tables import Labels, StepVector, VectorOperator, hash_metric

_INT64_LIMIT = float(2**63)


class _Entry:
    """A heap entry ordered by the aggregation's comparison; NaN sorts first."""

    __slots__ = ("sample_id", "total", "_compare")

    def __init__(
        self, sample_id: int, total: float, compare: Callable[[float, float], bool]
    ) -> None:
        self.sample_id = sample_id
        self.total = total
        self._compare = compare

    def __lt__(self, other: "_Entry") -> bool:
        if math.isnan(self.total):
            return True
        return self._compare(self.total, other.total)


def _warn(warns: Warnings, message: str) -> None:
    if warns is not None:
        warns.add(message)


class KHashAggregate(VectorOperator):
    """Keeps the k largest (topk) or smallest (bottomk) samples of each group.

    The output keeps the input series; within a group samples come out in
    order, best first, and groups come out in order of first appearance.
    """

    def __init__(
        self,
        next_op: VectorOperator,
        param_op: VectorOperator,
        aggregation: str,
        by: bool,
        labels: Sequence[str],
        steps_batch: int,
    ) -> None:
        if aggregation == "topk":
            self._compare: Callable[[float, float], bool] = lambda f, s: f < s
        else:
            self._compare = lambda f, s: s < f
        self._next = next_op
        self._param_op = param_op
        self._aggregation = aggregation
        self._by = by
        self._labels = sorted(labels)
        self._params = [0.0] * steps_batch
        self._initialized = False
        self._series: list[Labels] = []
        self._input_to_heap: list[list[_Entry]] = []
        self._heaps: list[list[_Entry]] = []

    def __str__(self) -> str:
        mode = "by" if self._by else "without"
        return f"[kaggregate] {self._aggregation} {mode} ([{' '.join(self._labels)}])"

    def explain(self) -> list[VectorOperator]:
        return [self._param_op, self._next]

    def series(self) -> list[Labels]:
        self._init()
        return list(self._series)

    def next_batch(self, warns: Warnings) -> Optional[list[StepVector]]:
        batch = self._next.next_batch(warns)

        for i, arg in enumerate(self._param_op.next_batch(warns) or ()):
            param = arg.samples[0]
            self._params[i] = param
            if math.isnan(param) or param > _INT64_LIMIT or param < -_INT64_LIMIT:
                raise ValueError(f"Scalar value {param} overflows int64")

        if batch is None:
            return None

        self._init()

        result = []
        for i, vector in enumerate(batch):
            k = int(self._params[i])
            if k <= 0:
                result.append(StepVector(vector.t))
                continue
            if vector.histograms:
                _warn(warns, IGNORED_HISTOGRAM_INFO.format(self._aggregation))
            result.append(self._aggregate(vector, k))
        return result

    def _aggregate(self, vector: StepVector, k: int) -> StepVector:
        for sample_id, value in zip(vector.sample_ids, vector.samples):
            heap = self._input_to_heap[sample_id]
            if len(heap) < k:
                heapq.heappush(heap, _Entry(sample_id, value, self._compare))
                continue
            top = heap[0].total
            if self._compare(top, value) or (math.isnan(top) and not math.isnan(value)):
                heapq.heapreplace(heap, _Entry(sample_id, value, self._compare))

        out = StepVector(vector.t)
        for heap in self._heaps:
            # The heap keeps the worst entry on top; emit best first.
            for entry in sorted(heap, reverse=True):
                out.append_sample(entry.sample_id, entry.total)
            heap.clear()
        return out

    def _init(self) -> None:
        if self._initialized:
            return
        series = self._next.series()
        by_key: dict[Labels, list[_Entry]] = {}
        input_to_heap: list[list[_Entry]] = []
        heaps: list[list[_Entry]] = []
        for metric in series:
            key, _ = hash_metric(metric, not self._by, self._labels)
            heap = by_key.get(key)
            if heap is None:
                heap = []
                by_key[key] = heap
                heaps.append(heap)
            input_to_heap.append(heap)
        self._input_to_heap = input_to_heap
        self._heaps = heaps
        self._series = list(series)
        self._initialized = True