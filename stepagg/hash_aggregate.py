"""Hash aggregation operator: sum, avg, count and friends, grouped by labels."""

from __future__ import annotations

import math
from typing import Optional, Sequence, Union

from stepagg.accumulators import (
    UnsupportedAggregationError,
    Warnings,
    new_scalar_accumulator,
)
from stepagg.tables import (
    Labels,
    ScalarTable,
    Series,
    StepVector,
    VectorOperator,
    VectorTable,
    hash_metric,
    new_scalar_tables,
    new_vectorized_tables,
)

INVALID_QUANTILE_WARNING = (
    "PromQL warning: quantile value should be between 0 and 1, got {}"
)

_Table = Union[ScalarTable, VectorTable]


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return f"{value:g}"


def _warn(warns: Warnings, message: str) -> None:
    if warns is not None:
        warns.add(message)


class HashAggregate(VectorOperator):
    """Aggregates the series of its input into groups keyed by their labels.

    Batches coming from the input with the same timestamp are folded into the
    same step, so that inputs split across several operators combine.
    """

    def __init__(
        self,
        next_op: VectorOperator,
        param_op: Optional[VectorOperator],
        aggregation: str,
        by: bool,
        labels: Sequence[str],
        steps_batch: int,
    ) -> None:
        # Fail early for aggregations that have no accumulator.
        new_scalar_accumulator(aggregation)
        self._next = next_op
        self._param_op = param_op
        self._aggregation = aggregation
        self._by = by
        self._labels = sorted(labels)
        self._steps_batch = steps_batch
        self._params = [0.0] * steps_batch
        self._last_batch: Optional[list[StepVector]] = None
        self._tables: Optional[list[_Table]] = None
        self._series: list[Labels] = []

    def __str__(self) -> str:
        mode = "by" if self._by else "without"
        return f"[aggregate] {self._aggregation} {mode} ([{' '.join(self._labels)}])"

    def explain(self) -> list[VectorOperator]:
        if self._aggregation == "quantile" and self._param_op is not None:
            return [self._param_op, self._next]
        return [self._next]

    def series(self) -> list[Labels]:
        self._initialize()
        return list(self._series)

    def next_batch(self, warns: Warnings) -> Optional[list[StepVector]]:
        tables = self._initialize()

        if self._param_op is not None:
            for i, arg in enumerate(self._param_op.next_batch(warns) or ()):
                param = arg.samples[0]
                self._params[i] = param
                if math.isnan(param) or param < 0 or param > 1:
                    _warn(warns, INVALID_QUANTILE_WARNING.format(_format_float(param)))

        for table, param in zip(tables, self._params):
            table.reset(param)

        if self._last_batch is not None:
            self._aggregate(self._last_batch, warns)
            self._last_batch = None

        while True:
            batch = self._next.next_batch(warns)
            if batch is None:
                break
            current = tables[0].timestamp
            if current is None or not batch or batch[0].t == current:
                self._aggregate(batch, warns)
                continue
            self._last_batch = batch
            break

        if tables[0].timestamp is None:
            return None

        result = []
        for table in tables:
            if table.timestamp is None:
                break
            result.append(table.to_vector(warns))
        return result

    def _aggregate(self, batch: Sequence[StepVector], warns: Warnings) -> None:
        assert self._tables is not None
        for i, vector in enumerate(batch):
            self._tables[i].aggregate(vector, warns)

    def _initialize(self) -> list[_Table]:
        if self._tables is None:
            if self._by and not self._labels:
                tables, series = self._vectorized_tables()
            else:
                tables, series = self._scalar_tables()
            self._tables = tables
            self._series = series
        return self._tables

    def _vectorized_tables(self) -> tuple[list[_Table], list[Labels]]:
        # The input is initialised even though all its labels are dropped.
        self._next.series()
        try:
            tables = new_vectorized_tables(self._steps_batch, self._aggregation)
        except UnsupportedAggregationError:
            return self._scalar_tables()
        return list(tables), [()]

    def _scalar_tables(self) -> tuple[list[_Table], list[Labels]]:
        output_map: dict[Labels, Series] = {}
        outputs: list[Series] = []
        input_cache: list[int] = []
        for metric in self._next.series():
            key, lbls = hash_metric(metric, not self._by, self._labels)
            output = output_map.get(key)
            if output is None:
                output = Series(lbls, len(outputs))
                output_map[key] = output
                outputs.append(output)
            input_cache.append(output.id)
        tables = new_scalar_tables(
            self._steps_batch, input_cache, outputs, self._aggregation
        )
        return list(tables), [output.metric for output in outputs]