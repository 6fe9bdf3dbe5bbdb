import math

import pytest
from hypothesis import given
from hypothesis import strategies as st

from stepagg.accumulators import (
    MIXED_FLOATS_HISTOGRAMS_WARNING,
    UnsupportedAggregationError,
)
from stepagg.tables import (
    ScalarTable,
    Series,
    StepVector,
    VectorOperator,
    VectorTable,
    hash_metric,
    new_scalar_tables,
    new_vectorized_tables,
)
from stepagg.accumulators import new_scalar_accumulator


class FakeHistogram:
    def __init__(self, count, schema=0):
        self.count = count
        self.schema = schema

    def copy(self):
        return FakeHistogram(self.count, self.schema)

    def add(self, other):
        return FakeHistogram(self.count + other.count, self.schema)


def _vector(t, values):
    vec = StepVector(t)
    for sid, v in enumerate(values):
        vec.append_sample(sid, v)
    return vec


def test_step_vector_appends_keep_ids_and_values_aligned():
    vec = StepVector(10)
    vec.append_sample(3, 1.5)
    vec.append_histogram(4, "h")
    assert vec.sample_ids == [3]
    assert vec.samples == [1.5]
    assert vec.histogram_ids == [4]
    assert vec.histograms == ["h"]


def test_hash_metric_without_drops_name_and_grouping():
    key, lbls = hash_metric(
        {"__name__": "bar", "pod": "nginx-1", "zone": "east-1"}, True, ["pod"]
    )
    assert lbls == (("zone", "east-1"),)
    assert key == lbls


def test_hash_metric_by_keeps_only_grouping():
    _, lbls = hash_metric(
        [("__name__", "bar"), ("zone", "east-1"), ("pod", "nginx-1")], False, ["pod"]
    )
    assert lbls == (("pod", "nginx-1"),)


def test_hash_metric_by_empty_grouping_collapses_everything():
    first = hash_metric({"pod": "a"}, False, [])
    second = hash_metric({"pod": "b"}, False, [])
    assert first == second == ((), ())


def test_hash_metric_same_key_when_only_excluded_labels_differ():
    a, _ = hash_metric({"__name__": "x", "pod": "p1", "zone": "z"}, True, ["pod"])
    b, _ = hash_metric({"__name__": "y", "pod": "p2", "zone": "z"}, True, ["pod"])
    c, _ = hash_metric({"__name__": "y", "pod": "p2", "zone": "w"}, True, ["pod"])
    assert a == b
    assert a != c


def test_scalar_table_groups_inputs_into_outputs():
    outputs = [Series((("pod", "a"),), 0), Series((("pod", "b"),), 1)]
    (table,) = new_scalar_tables(1, [0, 0, 1], outputs, "max")
    table.aggregate(_vector(30, [1.0, 5.0, 3.0]), None)
    result = table.to_vector(None)
    assert result.t == 30
    assert result.sample_ids == [0, 1]
    assert result.samples == [5.0, 3.0]


def test_scalar_table_skips_outputs_without_values():
    outputs = [Series((), 0), Series((), 1)]
    (table,) = new_scalar_tables(1, [0, 1], outputs, "count")
    vec = StepVector(0)
    vec.append_sample(1, 7.0)
    table.aggregate(vec, None)
    result = table.to_vector(None)
    assert result.sample_ids == [1]
    assert result.samples == [1.0]


def test_scalar_table_reset_clears_timestamp_and_values():
    outputs = [Series((), 0)]
    (table,) = new_scalar_tables(1, [0], outputs, "sum")
    assert table.timestamp is None
    table.aggregate(_vector(60, [2.0]), None)
    assert table.timestamp == 60
    table.reset(0.0)
    assert table.timestamp is None
    assert table.to_vector(None).samples == []


def test_scalar_table_quantile_uses_reset_argument():
    outputs = [Series((), 0)]
    (table,) = new_scalar_tables(1, [0, 0, 0], outputs, "quantile")
    table.reset(1.0)
    table.aggregate(_vector(0, [4.0, 9.0, 2.0]), None)
    assert table.to_vector(None).samples == [9.0]


def test_scalar_table_histogram_output():
    outputs = [Series((), 0)]
    (table,) = new_scalar_tables(1, [0, 0], outputs, "sum")
    vec = StepVector(0)
    vec.append_histogram(0, FakeHistogram(2))
    vec.append_histogram(1, FakeHistogram(5))
    table.aggregate(vec, None)
    result = table.to_vector(None)
    assert result.samples == []
    assert result.histogram_ids == [0]
    assert result.histograms[0].count == 7


def test_scalar_table_mixed_values_warn_and_are_dropped():
    outputs = [Series((), 0)]
    (table,) = new_scalar_tables(1, [0, 0], outputs, "sum")
    vec = StepVector(0)
    vec.append_sample(0, 1.0)
    vec.append_histogram(1, FakeHistogram(1))
    table.aggregate(vec, None)
    warns = set()
    result = table.to_vector(warns)
    assert result.samples == [] and result.histograms == []
    assert warns == {MIXED_FLOATS_HISTOGRAMS_WARNING}


def test_scalar_tables_are_independent():
    outputs = [Series((), 0)]
    tables = new_scalar_tables(3, [0], outputs, "sum")
    assert len(tables) == 3
    tables[0].aggregate(_vector(0, [4.0]), None)
    assert tables[0].to_vector(None).samples == [4.0]
    assert tables[1].to_vector(None).samples == []


def test_scalar_tables_unknown_aggregation():
    with pytest.raises(UnsupportedAggregationError):
        new_scalar_tables(2, [0], [Series((), 0)], "topk")


def test_scalar_table_direct_construction():
    outputs = [Series((), 0)]
    table = ScalarTable([0, 0], outputs, [new_scalar_accumulator("min")])
    table.aggregate(_vector(5, [8.0, 3.0]), None)
    assert table.to_vector(None).samples == [3.0]


def test_vector_table_writes_single_series():
    (table,) = new_vectorized_tables(1, "max")
    table.aggregate(_vector(15, [1.0, 6.0, 2.0]), None)
    result = table.to_vector(None)
    assert result.t == 15
    assert result.sample_ids == [0]
    assert result.samples == [6.0]


def test_vector_table_empty_and_reset():
    (table,) = new_vectorized_tables(1, "sum")
    assert table.to_vector(None).samples == []
    table.aggregate(_vector(0, [1.0]), None)
    table.reset(0.0)
    assert table.timestamp is None
    assert table.to_vector(None).samples == []


def test_vector_table_mixed_warns():
    table = VectorTable(new_scalar_accumulator("sum"))
    vec = _vector(0, [1.0])
    vec.append_histogram(0, FakeHistogram(1))
    table.aggregate(vec, None)
    warns = set()
    assert table.to_vector(warns).samples == []
    assert MIXED_FLOATS_HISTOGRAMS_WARNING in warns


def test_vectorized_tables_reject_non_vector_aggregations():
    with pytest.raises(UnsupportedAggregationError):
        new_vectorized_tables(1, "stddev")


@given(st.lists(st.floats(-1e6, 1e6), min_size=1, max_size=50))
def test_vector_table_sum_and_count_invariants(values):
    sum_table, count_table = (new_vectorized_tables(1, a)[0] for a in ("sum", "count"))
    vec = _vector(0, values)
    sum_table.aggregate(vec, None)
    count_table.aggregate(vec, None)
    assert math.isclose(
        sum_table.to_vector(None).samples[0], math.fsum(values), abs_tol=1e-6
    )
    assert count_table.to_vector(None).samples == [float(len(values))]


def test_vector_operator_feeds_tables():
    class Source(VectorOperator):
        def __init__(self):
            self._batches = [[_vector(0, [2.0, 3.0]), _vector(30, [4.0, 6.0])]]

        def series(self):
            return [(("pod", "a"),), (("pod", "b"),)]

        def next_batch(self, warns):
            return self._batches.pop() if self._batches else None

    src = Source()
    assert src.explain() == []
    batch = src.next_batch(None)
    tables = new_vectorized_tables(len(batch), "sum")
    for table, vec in zip(tables, batch):
        table.aggregate(vec, None)
    results = [table.to_vector(None) for table in tables]
    assert [r.t for r in results] == [0, 30]
    assert [r.samples for r in results] == [[5.0], [10.0]]
    assert src.next_batch(None) is None