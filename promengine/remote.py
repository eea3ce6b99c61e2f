"""Interfaces for engines that run queries remotely, and a static endpoint set."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Iterable

from promengine.model import Labels


class RemoteEngine(ABC):
    """An engine that covers a time range and a set of external label sets."""

    @abstractmethod
    def max_t(self) -> int: ...

    @abstractmethod
    def min_t(self) -> int: ...

    @abstractmethod
    def label_sets(self) -> list[Labels]: ...

    @abstractmethod
    def new_range_query(
        self, query: str, start: datetime, end: datetime, interval: timedelta, opts: Any = None
    ) -> Any: ...


class RemoteEndpoints(ABC):
    """A source of remote engines."""

    @abstractmethod
    def engines(self) -> list[RemoteEngine]: ...


class StaticEndpoints(RemoteEndpoints):
    """A fixed list of remote engines."""

    def __init__(self, engines: Iterable[RemoteEngine] = ()) -> None:
        self._engines = list(engines)

    def engines(self) -> list[RemoteEngine]:
        return list(self._engines)


def new_static_endpoints(engines: Iterable[RemoteEngine]) -> RemoteEndpoints:
    """Return endpoints that always yield the given engines."""
    return StaticEndpoints(engines)