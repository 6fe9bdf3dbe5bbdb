"""Remote engines that a distributed query can be spread over."""

from __future__ import annotations

import abc
from datetime import datetime, timedelta
from typing import Any, Iterable, Protocol

from stepagg.tables import Labels


class RemoteQuery(Protocol):
    """A query plan that renders as query text."""

    def __str__(self) -> str: ...


class RemoteEngine(abc.ABC):
    """An engine holding a slice of the data, bounded in time and by external labels."""

    @abc.abstractmethod
    def max_t(self) -> int:
        """Return the newest timestamp, in milliseconds, the engine holds."""

    @abc.abstractmethod
    def min_t(self) -> int:
        """Return the oldest timestamp, in milliseconds, the engine holds."""

    @abc.abstractmethod
    def label_sets(self) -> list[Labels]:
        """Return the external label sets of the engine."""

    @abc.abstractmethod
    def new_range_query(
        self,
        opts: Any,
        plan: RemoteQuery,
        start: datetime,
        end: datetime,
        interval: timedelta,
    ) -> Any:
        """Create a range query for the plan on this engine."""


class StaticEndpoints:
    """A fixed list of remote engines."""

    def __init__(self, engines: Iterable[RemoteEngine]) -> None:
        self._engines = tuple(engines)

    def engines(self) -> list[RemoteEngine]:
        return list(self._engines)