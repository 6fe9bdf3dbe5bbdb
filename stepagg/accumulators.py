"""Accumulators that fold the samples of one output group into a single value."""

from __future__ import annotations

import enum
import math
from typing import Callable, MutableSet, Optional, Protocol, Sequence

MIXED_SCHEMAS_WARNING = (
    "PromQL warning: vector contains a mix of histograms with exponential "
    "and custom buckets schemas"
)
INCOMPATIBLE_BUCKETS_WARNING = (
    "PromQL warning: vector contains histograms with incompatible custom buckets"
)
MIXED_FLOATS_HISTOGRAMS_WARNING = (
    "PromQL warning: encountered a mix of histograms and floats for aggregation"
)
IGNORED_HISTOGRAM_INFO = "PromQL info: ignored histogram in {} aggregation"

Warnings = Optional[MutableSet[str]]


class ValueType(enum.IntEnum):
    """Kind of value an accumulator currently holds."""

    NO_VALUE = 0
    SINGLE_TYPE_VALUE = 1
    MIXED_TYPE_VALUE = 2


class UnsupportedAggregationError(ValueError):
    """Raised for an aggregation that has no accumulator."""


class IncompatibleSchemaError(ValueError):
    """Raised by histograms that mix exponential and custom bucket schemas."""

    def __init__(
        self,
        message: str = (
            "cannot apply this operation on histograms with a mix of "
            "exponential and custom bucket schemas"
        ),
    ) -> None:
        super().__init__(message)


class IncompatibleBoundsError(ValueError):
    """Raised by custom-bucket histograms whose bounds differ."""

    def __init__(
        self,
        message: str = (
            "cannot apply this operation on custom buckets histograms with "
            "different custom bounds"
        ),
    ) -> None:
        super().__init__(message)


class _Histogram(Protocol):
    schema: int

    def copy(self) -> "_Histogram": ...

    def add(self, other: "_Histogram") -> "_Histogram": ...

    def sub(self, other: "_Histogram") -> "_Histogram": ...

    def mul(self, factor: float) -> "_Histogram": ...

    def div(self, factor: float) -> "_Histogram": ...


def _warn(warns: Warnings, message: str) -> None:
    if warns is not None:
        warns.add(message)


def _add_by_schema(total: _Histogram, h: _Histogram) -> _Histogram:
    """Add two histograms; the one with the larger schema is added to the other."""
    if h.schema >= total.schema:
        return total.add(h)
    return h.copy().add(total)


def sum_compensated(values: Sequence[float]) -> float:
    """Sum values with Neumaier's improved Kahan summation."""
    total = 0.0
    c = 0.0
    for x in values:
        t = total + x
        if math.isinf(t):
            c = 0.0
        elif abs(total) >= abs(x):
            c += (total - t) + x
        else:
            c += (x - t) + total
        total = t
    return total + c


def kahan_sum_inc(inc: float, total: float, c: float) -> tuple[float, float]:
    """Add ``inc`` to a compensated running sum; return the new sum and compensation."""
    t = total + inc
    if math.isinf(t):
        c = 0.0
    elif abs(total) >= abs(inc):
        c += (total - t) + inc
    else:
        c += (inc - t) + total
    return t, c


def quantile(q: float, points: Sequence[float]) -> float:
    """Return the q-quantile of the points, interpolating between neighbours."""
    if not points or math.isnan(q):
        return math.nan
    if q < 0:
        return -math.inf
    if q > 1:
        return math.inf
    ordered = sorted(points)
    n = float(len(ordered))
    rank = q * (n - 1)
    lower = max(0.0, math.floor(rank))
    upper = min(n - 1, lower + 1)
    weight = rank - math.floor(rank)
    return ordered[int(lower)] * (1 - weight) + ordered[int(upper)] * weight


def histogram_sum(
    current: Optional[_Histogram],
    histograms: Sequence[_Histogram],
    warns: Warnings,
) -> Optional[_Histogram]:
    """Add histograms onto ``current``; incompatible inputs give None and a warning."""
    if not histograms:
        return current
    if current is None and len(histograms) == 1:
        return histograms[0].copy()
    if current is not None:
        total = current.copy()
        rest = histograms
    else:
        total = histograms[0].copy()
        rest = histograms[1:]
    for h in rest:
        try:
            total = _add_by_schema(total, h)
        except IncompatibleSchemaError:
            _warn(warns, MIXED_SCHEMAS_WARNING)
            return None
        except IncompatibleBoundsError:
            _warn(warns, INCOMPATIBLE_BUCKETS_WARNING)
            return None
    return total


def _max_ignoring_nan(values: Sequence[float]) -> float:
    finite = [v for v in values if not math.isnan(v)]
    return max(finite) if finite else values[0]


def _min_ignoring_nan(values: Sequence[float]) -> float:
    finite = [v for v in values if not math.isnan(v)]
    return min(finite) if finite else values[0]


class SumAcc:
    """Accumulates the sum of floats and of histograms separately."""

    def __init__(self) -> None:
        self._value = 0.0
        self._hist_sum: Optional[_Histogram] = None
        self._has_float = False

    def add_vector(self, values, histograms, warns):
        if values:
            self._value += sum_compensated(values)
            self._has_float = True
        if histograms:
            self._hist_sum = histogram_sum(self._hist_sum, histograms, warns)

    def add(self, value, histogram, warns):
        if histogram is None:
            self._has_float = True
            self._value += value
            return
        if self._hist_sum is None:
            self._hist_sum = histogram.copy()
            return
        try:
            self._hist_sum = _add_by_schema(self._hist_sum, histogram)
        except (IncompatibleSchemaError, IncompatibleBoundsError) as exc:
            self._hist_sum = None
            _warn(warns, str(exc))

    def value(self):
        return self._value, self._hist_sum

    def value_type(self):
        if self._has_float and self._hist_sum is not None:
            return ValueType.MIXED_TYPE_VALUE
        if self._has_float or self._hist_sum is not None:
            return ValueType.SINGLE_TYPE_VALUE
        return ValueType.NO_VALUE

    def reset(self, arg):
        self._hist_sum = None
        self._has_float = False
        self._value = 0.0


class _ExtremumAcc:
    _name = ""

    def __init__(self) -> None:
        self._value = 0.0
        self._has_value = False

    def _better(self, candidate: float) -> bool:
        raise NotImplementedError

    def _pick(self, values: Sequence[float]) -> float:
        raise NotImplementedError

    def add_vector(self, values, histograms, warns):
        if histograms:
            _warn(warns, IGNORED_HISTOGRAM_INFO.format(self._name))
        if not values:
            return
        first, rest = values[0], values[1:]
        self.add(first, None, warns)
        if rest:
            self.add(self._pick(rest), None, warns)

    def add(self, value, histogram, warns):
        if histogram is not None:
            return
        if not self._has_value:
            self._value = value
            self._has_value = True
            return
        if self._better(value) or math.isnan(self._value):
            self._value = value

    def value(self):
        return self._value, None

    def value_type(self):
        return ValueType.SINGLE_TYPE_VALUE if self._has_value else ValueType.NO_VALUE

    def reset(self, arg):
        self._has_value = False
        self._value = 0.0


class MaxAcc(_ExtremumAcc):
    """Keeps the largest float; NaN is replaced by any later value."""

    _name = "max"

    def _better(self, candidate):
        return self._value < candidate

    def _pick(self, values):
        return _max_ignoring_nan(values)

    def add_vector(self, values, histograms, warns):
        super().add_vector(values, histograms, warns)

    def add(self, value, histogram, warns):
        super().add(value, histogram, warns)

    def value(self):
        return super().value()

    def value_type(self):
        return super().value_type()

    def reset(self, arg):
        super().reset(arg)


class MinAcc(_ExtremumAcc):
    """Keeps the smallest float; NaN is replaced by any later value."""

    _name = "min"

    def _better(self, candidate):
        return self._value > candidate

    def _pick(self, values):
        return _min_ignoring_nan(values)

    def add_vector(self, values, histograms, warns):
        super().add_vector(values, histograms, warns)

    def add(self, value, histogram, warns):
        super().add(value, histogram, warns)

    def value(self):
        return super().value()

    def value_type(self):
        return super().value_type()

    def reset(self, arg):
        super().reset(arg)


class GroupAcc:
    """Yields 1 for any group that received at least one sample."""

    def __init__(self) -> None:
        self._value = 0.0
        self._has_value = False

    def add_vector(self, values, histograms, warns):
        if not values and not histograms:
            return
        self._has_value = True
        self._value = 1.0

    def add(self, value, histogram, warns):
        self._has_value = True
        self._value = 1.0

    def value(self):
        return self._value, None

    def value_type(self):
        return ValueType.SINGLE_TYPE_VALUE if self._has_value else ValueType.NO_VALUE

    def reset(self, arg):
        self._has_value = False
        self._value = 0.0


class CountAcc:
    """Counts floats and histograms alike."""

    def __init__(self) -> None:
        self._value = 0.0
        self._has_value = False

    def add_vector(self, values, histograms, warns):
        if values or histograms:
            self._has_value = True
            self._value += float(len(values)) + float(len(histograms))

    def add(self, value, histogram, warns):
        self._has_value = True
        self._value += 1

    def value(self):
        return self._value, None

    def value_type(self):
        return ValueType.SINGLE_TYPE_VALUE if self._has_value else ValueType.NO_VALUE

    def reset(self, arg):
        self._has_value = False
        self._value = 0.0


class AvgAcc:
    """Averages floats, switching to an incremental mean if the sum would overflow."""

    def __init__(self) -> None:
        self._kahan_sum = 0.0
        self._kahan_c = 0.0
        self._avg = 0.0
        self._incremental = False
        self._count = 0
        self._has_value = False
        self._hist_sum: Optional[_Histogram] = None
        self._hist_count = 0.0

    def add(self, value, histogram, warns):
        if histogram is not None:
            self._hist_count += 1
            if self._hist_sum is None:
                self._hist_sum = histogram.copy()
                return
            left = histogram.copy().div(self._hist_count)
            right = self._hist_sum.copy().div(self._hist_count)
            to_add = left.sub(right)
            self._hist_sum = self._hist_sum.add(to_add)
            return

        self._count += 1
        if not self._has_value:
            self._has_value = True
            self._kahan_sum = value
            return

        if not self._incremental:
            new_sum, new_c = kahan_sum_inc(value, self._kahan_sum, self._kahan_c)
            if not math.isinf(new_sum):
                self._kahan_sum, self._kahan_c = new_sum, new_c
                return
            # The sum would overflow: continue with an incremental mean.
            self._incremental = True
            self._avg = self._kahan_sum / (self._count - 1)
            self._kahan_c /= self._count - 1

        if math.isinf(self._avg):
            if math.isinf(value) and (self._avg > 0) == (value > 0):
                return
            if not math.isinf(value) and not math.isnan(value):
                return
        current_mean = self._avg + self._kahan_c
        self._avg, self._kahan_c = kahan_sum_inc(
            value / self._count - current_mean / self._count,
            self._avg,
            self._kahan_c,
        )

    def add_vector(self, values, histograms, warns):
        for v in values:
            self.add(v, None, warns)
        for h in histograms:
            try:
                self.add(0.0, h, warns)
            except IncompatibleSchemaError:
                self._hist_sum = None
                self._hist_count = 0.0
                _warn(warns, MIXED_SCHEMAS_WARNING)
                return
            except IncompatibleBoundsError:
                self._hist_sum = None
                self._hist_count = 0.0
                _warn(warns, INCOMPATIBLE_BUCKETS_WARNING)
                return

    def value(self):
        if self._incremental:
            return self._avg + self._kahan_c, self._hist_sum
        if self._count == 0:
            return math.nan, self._hist_sum
        return (self._kahan_sum + self._kahan_c) / self._count, self._hist_sum

    def value_type(self):
        has_float = self._count > 0
        has_hist = self._hist_count > 0
        if has_float and has_hist:
            return ValueType.MIXED_TYPE_VALUE
        if has_float or has_hist:
            return ValueType.SINGLE_TYPE_VALUE
        return ValueType.NO_VALUE

    def reset(self, arg):
        self._has_value = False
        self._count = 0
        self._hist_count = 0.0
        self._hist_sum = None


class _StatAcc:
    _name = ""

    def __init__(self) -> None:
        self._count = 0.0
        self._mean = 0.0
        self._value = 0.0
        self._has_value = False

    def add(self, value, histogram, warns):
        if histogram is not None:
            _warn(warns, IGNORED_HISTOGRAM_INFO.format(self._name))
            return
        self._has_value = True
        self._count += 1
        if math.isnan(value) or math.isinf(value):
            self._value = math.nan
        else:
            delta = value - self._mean
            self._mean += delta / self._count
            self._value += delta * (value - self._mean)

    def _variance(self) -> float:
        if math.isnan(self._value):
            return math.nan
        if self._count == 1:
            return 0.0
        if self._count == 0:
            return math.nan
        return self._value / self._count

    def value_type(self):
        return ValueType.SINGLE_TYPE_VALUE if self._has_value else ValueType.NO_VALUE

    def reset(self, arg):
        self._has_value = False
        self._count = 0.0
        self._mean = 0.0
        self._value = 0.0


class StdDevAcc(_StatAcc):
    """Population standard deviation via Welford's method."""

    _name = "stddev"

    def add(self, value, histogram, warns):
        super().add(value, histogram, warns)

    def value(self):
        variance = self._variance()
        return (variance if math.isnan(variance) else math.sqrt(variance)), None

    def value_type(self):
        return super().value_type()

    def reset(self, arg):
        super().reset(arg)


class StdVarAcc(_StatAcc):
    """Population variance via Welford's method."""

    _name = "stdvar"

    def add(self, value, histogram, warns):
        super().add(value, histogram, warns)

    def value(self):
        return self._variance(), None

    def value_type(self):
        return super().value_type()

    def reset(self, arg):
        super().reset(arg)


class QuantileAcc:
    """Collects floats and reports the quantile given by the reset argument."""

    def __init__(self) -> None:
        self._arg = 0.0
        self._points: list[float] = []
        self._has_value = False

    def add(self, value, histogram, warns):
        if histogram is not None:
            _warn(warns, IGNORED_HISTOGRAM_INFO.format("quantile"))
            return
        self._has_value = True
        self._points.append(value)

    def value(self):
        return quantile(self._arg, self._points), None

    def value_type(self):
        return ValueType.SINGLE_TYPE_VALUE if self._has_value else ValueType.NO_VALUE

    def reset(self, arg):
        self._has_value = False
        self._arg = arg
        self._points.clear()


class HistogramAvgAcc:
    """Averages histograms; any float input makes the result empty."""

    def __init__(self) -> None:
        self._sum: Optional[_Histogram] = None
        self._count = 0
        self._has_float = False

    def add(self, value, histogram, warns):
        if histogram is None:
            self._has_float = True
            return
        if self._count == 0:
            self._sum = histogram.copy()
        self._sum = _add_by_schema(self._sum, histogram)
        self._count += 1

    def value(self):
        if self._count == 0 or self._sum is None:
            return 0.0, None
        return 0.0, self._sum.copy().mul(1 / self._count)

    def value_type(self):
        if self._count > 0 and not self._has_float:
            return ValueType.SINGLE_TYPE_VALUE
        return ValueType.NO_VALUE

    def reset(self, arg):
        self._count = 0


_SCALAR_ACCUMULATORS: dict[str, Callable[[], object]] = {
    "sum": SumAcc,
    "max": MaxAcc,
    "min": MinAcc,
    "count": CountAcc,
    "avg": AvgAcc,
    "group": GroupAcc,
    "stddev": StdDevAcc,
    "stdvar": StdVarAcc,
    "quantile": QuantileAcc,
    "histogram_avg": HistogramAvgAcc,
}

_VECTOR_ACCUMULATORS: dict[str, Callable[[], object]] = {
    "sum": SumAcc,
    "max": MaxAcc,
    "min": MinAcc,
    "count": CountAcc,
    "avg": AvgAcc,
    "group": GroupAcc,
}


def new_scalar_accumulator(aggregation: str):
    """Return a fresh accumulator fed one sample at a time."""
    try:
        return _SCALAR_ACCUMULATORS[aggregation]()
    except KeyError:
        raise UnsupportedAggregationError(
            f"unknown aggregation function {aggregation}"
        ) from None


def new_vector_accumulator(aggregation: str):
    """Return a fresh accumulator that can take a whole vector at once."""
    try:
        return _VECTOR_ACCUMULATORS[aggregation]()
    except KeyError:
        raise UnsupportedAggregationError(
            f"unknown aggregation function {aggregation}"
        ) from None