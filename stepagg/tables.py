"""Per-step aggregation tables and the data types they exchange with operators."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from stepagg.accumulators import (
    MIXED_FLOATS_HISTOGRAMS_WARNING,
    ValueType,
    Warnings,
    new_scalar_accumulator,
    new_vector_accumulator,
)

METRIC_NAME = "__name__"

Labels = tuple[tuple[str, str], ...]
LabelsLike = Union[Mapping[str, str], Iterable[tuple[str, str]]]


def to_labels(metric: LabelsLike) -> Labels:
    """Normalise a mapping or pairs of label names and values to sorted pairs."""
    pairs = metric.items() if isinstance(metric, Mapping) else metric
    return tuple(sorted((str(name), str(value)) for name, value in pairs))


@dataclass
class StepVector:
    """Samples and histograms of many series at one timestamp."""

    t: int
    sample_ids: list[int] = field(default_factory=list)
    samples: list[float] = field(default_factory=list)
    histogram_ids: list[int] = field(default_factory=list)
    histograms: list[Any] = field(default_factory=list)

    def append_sample(self, sample_id: int, value: float) -> None:
        self.sample_ids.append(sample_id)
        self.samples.append(value)

    def append_histogram(self, sample_id: int, histogram: Any) -> None:
        self.histogram_ids.append(sample_id)
        self.histograms.append(histogram)


@dataclass
class Series:
    """An output series: its labels and its position among the outputs."""

    metric: Labels
    id: int


class VectorOperator(abc.ABC):
    """A node of the execution tree that yields batches of step vectors."""

    @abc.abstractmethod
    def series(self) -> list[Labels]:
        """Return the labels of every series the operator produces."""

    @abc.abstractmethod
    def next_batch(self, warns: Warnings) -> Optional[list[StepVector]]:
        """Return the next batch of step vectors, or None once exhausted."""

    def explain(self) -> list["VectorOperator"]:
        """Return the operators this one reads from."""
        return []


def _warn(warns: Warnings, message: str) -> None:
    if warns is not None:
        warns.add(message)


class ScalarTable:
    """Aggregates the samples of one step into one accumulator per output series."""

    def __init__(
        self,
        inputs: Sequence[int],
        outputs: Sequence[Series],
        accumulators: Sequence[Any],
    ) -> None:
        self.timestamp: Optional[int] = None
        self._inputs = inputs
        self._outputs = outputs
        self._accumulators = list(accumulators)

    def aggregate(self, vector: StepVector, warns: Warnings) -> None:
        self.timestamp = vector.t
        for sample_id, value in zip(vector.sample_ids, vector.samples):
            output = self._outputs[self._inputs[sample_id]]
            self._accumulators[output.id].add(value, None, warns)
        for sample_id, histogram in zip(vector.histogram_ids, vector.histograms):
            output = self._outputs[self._inputs[sample_id]]
            self._accumulators[output.id].add(0.0, histogram, warns)

    def to_vector(self, warns: Warnings) -> StepVector:
        result = StepVector(self.timestamp)
        for output, acc in zip(self._outputs, self._accumulators):
            kind = acc.value_type()
            if kind is ValueType.SINGLE_TYPE_VALUE:
                value, histogram = acc.value()
                if histogram is None:
                    result.append_sample(output.id, value)
                else:
                    result.append_histogram(output.id, histogram)
            elif kind is ValueType.MIXED_TYPE_VALUE:
                _warn(warns, MIXED_FLOATS_HISTOGRAMS_WARNING)
        return result

    def reset(self, arg: float) -> None:
        for acc in self._accumulators:
            acc.reset(arg)
        self.timestamp = None


class VectorTable:
    """Aggregates a whole step into a single output series with id 0."""

    def __init__(self, accumulator: Any) -> None:
        self.timestamp: Optional[int] = None
        self._accumulator = accumulator

    def aggregate(self, vector: StepVector, warns: Warnings) -> None:
        self.timestamp = vector.t
        self._accumulator.add_vector(vector.samples, vector.histograms, warns)

    def to_vector(self, warns: Warnings) -> StepVector:
        result = StepVector(self.timestamp)
        kind = self._accumulator.value_type()
        if kind is ValueType.SINGLE_TYPE_VALUE:
            value, histogram = self._accumulator.value()
            if histogram is None:
                result.append_sample(0, value)
            else:
                result.append_histogram(0, histogram)
        elif kind is ValueType.MIXED_TYPE_VALUE:
            _warn(warns, MIXED_FLOATS_HISTOGRAMS_WARNING)
        return result

    def reset(self, arg: float) -> None:
        self.timestamp = None
        self._accumulator.reset(arg)


def hash_metric(
    metric: LabelsLike, without: bool, grouping: Iterable[str]
) -> tuple[Labels, Labels]:
    """Return the grouping key of a metric and the labels of its output group.

    With ``without`` the metric name and the grouping labels are dropped;
    otherwise only the grouping labels present on the metric are kept.
    """
    lbls = to_labels(metric)
    names = set(grouping)
    if without:
        kept = tuple(
            (name, value)
            for name, value in lbls
            if name != METRIC_NAME and name not in names
        )
        return kept, kept
    if not names:
        return (), ()
    kept = tuple((name, value) for name, value in lbls if name in names)
    return kept, kept


def new_scalar_tables(
    steps_batch: int,
    input_cache: Sequence[int],
    outputs: Sequence[Series],
    aggregation: str,
) -> list[ScalarTable]:
    """Create one scalar table per step of a batch, each with fresh accumulators."""
    return [
        ScalarTable(
            input_cache,
            outputs,
            [new_scalar_accumulator(aggregation) for _ in outputs],
        )
        for _ in range(steps_batch)
    ]


def new_vectorized_tables(steps_batch: int, aggregation: str) -> list[VectorTable]:
    """Create one vector table per step of a batch."""
    return [
        VectorTable(new_vector_accumulator(aggregation)) for _ in range(steps_batch)
    ]