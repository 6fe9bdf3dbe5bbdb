# stepagg

`stepagg` provides the aggregation building blocks of a vectorised time-series query engine. Data moves between operators as batches of step vectors. A `StepVector` holds one timestamp (`t`), plus the ids and values of the float samples and the histograms of every series at that timestamp.

## Modules

- `stepagg.accumulators` holds the per-group accumulators:
  - `SumAcc`, `MaxAcc`, `MinAcc`, `GroupAcc`, `CountAcc`, `AvgAcc`, `StdDevAcc`, `StdVarAcc`, `QuantileAcc` and `HistogramAvgAcc`.
  - Each accumulator has `add`. Accumulators that can take a whole step at once also have `add_vector`. Every accumulator has `value`, which returns a float and a histogram or `None`. Every accumulator also has `value_type`, which returns a `ValueType`, and `reset`.
  - The numeric helpers are `sum_compensated` (Neumaier summation), `kahan_sum_inc`, `quantile` and `histogram_sum`.
  - `new_scalar_accumulator(name)` and `new_vector_accumulator(name)` create accumulators by aggregation name. They raise `UnsupportedAggregationError` for a name they do not know.
- `stepagg.tables` defines the data types and the operator interface:
  - `StepVector` and `Series`.
  - The abstract `VectorOperator`, with `series()`, `next_batch(warns)` and `explain()`. `next_batch` returns `None` once the operator is exhausted.
  - The per-step tables `ScalarTable` (one accumulator per output group) and `VectorTable` (one accumulator for the whole step).
  - `hash_metric`, `new_scalar_tables`, `new_vectorized_tables` and `to_labels`. Label sets are tuples of `(name, value)` pairs, sorted by name.
- `stepagg.hash_aggregate.HashAggregate` groups its input with `by` or `without` labels. It supports `sum`, `avg`, `min`, `max`, `count`, `group`, `stddev`, `stdvar`, `quantile` and `histogram_avg`.
  - Consecutive input batches with the same timestamp are folded into one step.
  - A `quantile` parameter outside [0, 1] adds a warning.
- `stepagg.khash_aggregate.KHashAggregate` implements `topk` and `bottomk`.
  - It keeps the input series and emits the best samples of each group first.
  - A step whose k is 0 or less yields an empty vector.
  - A k that is NaN or does not fit in int64 raises `ValueError`.
- `stepagg.count_values.CountValues` emits, per group and step, how many samples carry each distinct value. Each value becomes a series whose parameter label holds the value as text. `-0` and `0` count as different values.
- `stepagg.sort` orders instant-vector results, given as a list of `Sample`:
  - `NoSortResultSort`, `SortFuncResultSort`, `SortByLabelResultSort` and `AggregateResultSort`.
  - `result_sort_for_call` picks the ordering for a top-level `sort`, `sort_desc`, `sort_by_label` or `sort_by_label_desc`.
  - `result_sort_for_aggregate` picks the ordering for a top-level `topk` or `bottomk`.
  - The helpers are `natural_less`, `labels_compare` and `value_less`. With `value_less`, NaN sorts last.
- `stepagg.explain` builds trees from an operator tree:
  - `explain_vector` builds an `ExplainOutputNode` tree from each operator's `str()` and its `explain()` children.
  - `analyze_query` builds an `AnalyzeOutputNode` tree over operators that have a `samples()` method. Those operators return `OperatorSamples`.
  - An `AnalyzeOutputNode` rolls up `total_samples()`, `peak_samples()` and `total_samples_per_step()`. It honours an operator's `node_kind` (`NodeKind.SUBQUERY`, `NodeKind.STEP_INVARIANT`).
- `stepagg.remote` defines the abstract `RemoteEngine` and `StaticEndpoints`. `StaticEndpoints` holds a fixed list of remote engines.

## Warnings

Operators and accumulators take a `warns` argument. This is a mutable set, or `None` to discard warnings. Non-fatal conditions add a message to it, and processing continues. Such conditions include ignored histograms, mixed floats and histograms, and incompatible histogram schemas or bounds.

## Example

```python
from stepagg.accumulators import new_scalar_accumulator, quantile
from stepagg.hash_aggregate import HashAggregate
from stepagg.tables import StepVector, VectorOperator, to_labels

acc = new_scalar_accumulator("avg")
warns = set()
for v in (1.0, 2.0, 6.0):
    acc.add(v, None, warns)
print(acc.value())                          # (3.0, None)
print(quantile(0.5, [4.0, 1.0, 3.0, 2.0]))  # 2.5


class Source(VectorOperator):
    def __init__(self):
        self._done = False

    def series(self):
        return [to_labels({"__name__": "up", "pod": "a"}),
                to_labels({"__name__": "up", "pod": "b"})]

    def next_batch(self, warns):
        if self._done:
            return None
        self._done = True
        vector = StepVector(0)
        vector.append_sample(0, 1.0)
        vector.append_sample(1, 2.0)
        return [vector]


agg = HashAggregate(Source(), None, "sum", by=True, labels=[], steps_batch=10)
print(agg.next_batch(warns))  # one StepVector at t=0 with samples [3.0]
print(agg.next_batch(warns))  # None
```

## What the package does not do

`stepagg` has no query-language parser, no query planner or optimiser, no storage, and no engine that runs a query end to end. It also has no command-line tool.

Operators must be supplied by the caller as `VectorOperator` implementations. `RemoteEngine` is only an interface.

No histogram type is included. The accumulators work with any object that offers `schema`, `copy()`, `add()`, `sub()`, `mul()` and `div()`, and that raises `IncompatibleSchemaError` or `IncompatibleBoundsError` when two histograms cannot be combined.

## Installing and testing

```
pip install .
pip install ".[test]"
pytest
```