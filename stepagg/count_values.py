"""count_values aggregation: counts how many series share each sample value."""

from __future__ import annotations

import math
from collections import Counter
from decimal import Decimal
from typing import Optional, Sequence

from stepagg.accumulators import Warnings
from stepagg.tables import Labels, StepVector, VectorOperator, hash_metric, to_labels


def _format_value(value: float) -> str:
    """Format a float with the fewest digits that round-trip, never in exponent form."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    text = format(Decimal(repr(value)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


class CountValues(VectorOperator):
    """Emits, per group and step, how many input samples carry each distinct value.

    Every distinct value becomes an output series whose ``param`` label holds
    the value's text; -0 and 0 are kept apart.
    """

    def __init__(
        self,
        next_op: VectorOperator,
        param: str,
        by: bool,
        grouping: Sequence[str],
        steps_batch: int,
    ) -> None:
        self._next = next_op
        self._param = param
        self._by = by
        self._grouping = sorted(grouping)
        self._steps_batch = steps_batch
        self._initialized = False
        self._ts: list[int] = []
        self._counts: list[dict[int, int]] = []
        self._series: list[Labels] = []
        self._cur_step = 0

    def __str__(self) -> str:
        mode = "by" if self._by else "without"
        return (
            f"[countValues] {mode} ([{' '.join(self._grouping)}]) "
            f"- param ({self._param})"
        )

    def explain(self) -> list[VectorOperator]:
        return [self._next]

    def series(self) -> list[Labels]:
        self._init(None)
        return list(self._series)

    def next_batch(self, warns: Warnings) -> Optional[list[StepVector]]:
        self._init(warns)
        if self._cur_step >= len(self._ts):
            return None
        batch = []
        for _ in range(self._steps_batch):
            if self._cur_step >= len(self._ts):
                break
            vector = StepVector(self._ts[self._cur_step])
            for output_id, count in self._counts[self._cur_step].items():
                vector.append_sample(output_id, float(count))
            batch.append(vector)
            self._cur_step += 1
        return batch

    def _init(self, warns: Warnings) -> None:
        if self._initialized:
            return
        self._initialized = True

        input_buckets: list[Labels] = []
        bucket_labels: dict[Labels, Labels] = {}
        for metric in self._next.series():
            key, lbls = hash_metric(metric, not self._by, self._grouping)
            input_buckets.append(key)
            bucket_labels.setdefault(key, lbls)

        output_ids: dict[Labels, int] = {}
        series: list[Labels] = []
        ts: list[int] = []
        counts: list[dict[int, int]] = []

        while (batch := self._next.next_batch(warns)) is not None:
            for vector in batch:
                ts.append(vector.t)
                per_bucket: dict[Labels, Counter[str]] = {}
                for sample_id, value in zip(vector.sample_ids, vector.samples):
                    bucket = per_bucket.setdefault(input_buckets[sample_id], Counter())
                    bucket[_format_value(value)] += 1
                for sample_id, histogram in zip(
                    vector.histogram_ids, vector.histograms
                ):
                    bucket = per_bucket.setdefault(input_buckets[sample_id], Counter())
                    bucket[str(histogram)] += 1

                per_output: dict[int, int] = {}
                for key, values in per_bucket.items():
                    base = dict(bucket_labels[key])
                    for text, count in values.items():
                        base[self._param] = text
                        lbls = to_labels(base)
                        output_id = output_ids.get(lbls)
                        if output_id is None:
                            output_id = len(series)
                            series.append(lbls)
                            output_ids[lbls] = output_id
                        per_output[output_id] = per_output.get(output_id, 0) + count
                counts.append(per_output)

        self._ts = ts
        self._counts = counts
        self._series = series