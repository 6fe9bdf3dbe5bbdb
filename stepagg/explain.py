"""Explain and analyze trees built from an operator tree."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional


class NodeKind(enum.Enum):
    """Kind of logical node an operator was planned from, as far as analysis cares."""

    OTHER = "other"
    SUBQUERY = "subquery"
    STEP_INVARIANT = "step_invariant"


@dataclass
class OperatorSamples:
    """Samples counted by one operator."""

    total_samples: int = 0
    peak_samples: int = 0
    total_samples_per_step: list[int] = field(default_factory=list)


@dataclass
class ExplainOutputNode:
    """An operator's name and the explanation of its inputs."""

    operator_name: str
    children: list["ExplainOutputNode"] = field(default_factory=list)


@dataclass
class AnalyzeOutputNode:
    """An observed operator and its observed inputs, with sample totals rolled up."""

    operator_telemetry: Any
    children: list["AnalyzeOutputNode"] = field(default_factory=list)
    _aggregated: bool = field(default=False, init=False, repr=False, compare=False)
    _total: int = field(default=0, init=False, repr=False, compare=False)
    _peak: int = field(default=0, init=False, repr=False, compare=False)
    _per_step: list[int] = field(
        default_factory=list, init=False, repr=False, compare=False
    )

    def total_samples(self) -> int:
        self._aggregate()
        return self._total

    def total_samples_per_step(self) -> list[int]:
        self._aggregate()
        return list(self._per_step)

    def peak_samples(self) -> int:
        self._aggregate()
        return self._peak

    def _aggregate(self) -> None:
        if self._aggregated:
            return
        self._aggregated = True

        samples: Optional[OperatorSamples] = self.operator_telemetry.samples()
        if samples is not None:
            self._total += samples.total_samples
            self._peak += samples.peak_samples
            self._per_step = list(samples.total_samples_per_step)

        kind = getattr(self.operator_telemetry, "node_kind", NodeKind.OTHER)
        for child in self.children:
            self._peak = max(self._peak, child.peak_samples())
            if kind is NodeKind.SUBQUERY:
                continue
            if kind is NodeKind.STEP_INVARIANT:
                child_total = child.total_samples()
                for i in range(len(self._per_step)):
                    self._total += child_total
                    self._per_step[i] += child_total
            else:
                self._total += child.total_samples()
                for i, count in enumerate(child.total_samples_per_step()):
                    self._per_step[i] += count


def _is_observable(op: Any) -> bool:
    return callable(getattr(op, "samples", None))


def analyze_query(op: Any) -> AnalyzeOutputNode:
    """Build the analysis tree of an observable operator and its observable inputs."""
    children = [analyze_query(child) for child in op.explain() if _is_observable(child)]
    return AnalyzeOutputNode(operator_telemetry=op, children=children)


def explain_vector(op: Any) -> ExplainOutputNode:
    """Build the explanation tree of an operator."""
    return ExplainOutputNode(
        operator_name=str(op),
        children=[explain_vector(child) for child in op.explain()],
    )