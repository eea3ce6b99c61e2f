"""Ordering of instant vector results as required by the query expression."""

from __future__ import annotations

import functools
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from promengine.model import Sample, compare_labels


class SortOrder(Enum):
    ASC = False
    DESC = True


def value_compare(order: SortOrder, left: float, right: float) -> bool:
    """Return whether ``left`` sorts before ``right``; NaNs sort last."""
    if math.isnan(right):
        return True
    if order is SortOrder.ASC:
        return left < right
    return left > right


class ResultSorter(ABC):
    """Sorts the samples of an instant vector result."""

    @abstractmethod
    def _less(self, left: Sample, right: Sample) -> bool:
        """Return whether ``left`` sorts before ``right``."""

    def sort(self, samples: Iterable[Sample]) -> list[Sample]:
        """Return the samples in result order."""

        def cmp(a: Sample, b: Sample) -> int:
            if self._less(a, b):
                return -1
            if self._less(b, a):
                return 1
            return 0

        return sorted(samples, key=functools.cmp_to_key(cmp))


@dataclass(frozen=True)
class SortFuncResultSort(ResultSorter):
    """Order produced by ``sort`` and ``sort_desc``."""

    sort_order: SortOrder = SortOrder.ASC

    def _less(self, left: Sample, right: Sample) -> bool:
        return value_compare(self.sort_order, left.f, right.f)


@dataclass(frozen=True)
class AggregateResultSort(ResultSorter):
    """Order produced by ``topk`` and ``bottomk``: by group, then by value."""

    sorting_labels: tuple[str, ...] = ()
    group_by: bool = True
    sort_order: SortOrder = SortOrder.DESC

    def _group(self, sample: Sample):
        if self.group_by:
            return sample.metric.keep(*self.sorting_labels)
        return sample.metric.drop(*self.sorting_labels)

    def _less(self, left: Sample, right: Sample) -> bool:
        order = compare_labels(self._group(left), self._group(right))
        if order != 0:
            return order < 0
        return value_compare(self.sort_order, left.f, right.f)


@dataclass(frozen=True)
class NoSortResultSort(ResultSorter):
    """Keeps samples in the order they were produced."""

    def _less(self, left: Sample, right: Sample) -> bool:
        return False

    def sort(self, samples: Iterable[Sample]) -> list[Sample]:
        return list(samples)


def _op_name(op: Any) -> str:
    return str(getattr(op, "name", op)).lower()


def new_result_sort(expr: Any) -> ResultSorter:
    """Choose the result ordering for a parsed expression.

    Call expressions expose ``func.name``; aggregations expose ``op``,
    ``grouping`` and ``without``.
    """
    func = getattr(expr, "func", None)
    if func is not None:
        name = getattr(func, "name", None)
        if name == "sort":
            return SortFuncResultSort(SortOrder.ASC)
        if name == "sort_desc":
            return SortFuncResultSort(SortOrder.DESC)
        return NoSortResultSort()
    if hasattr(expr, "grouping"):
        op = _op_name(getattr(expr, "op", ""))
        grouping = tuple(expr.grouping or ())
        group_by = not getattr(expr, "without", False)
        if op == "topk":
            return AggregateResultSort(grouping, group_by, SortOrder.DESC)
        if op == "bottomk":
            return AggregateResultSort(grouping, group_by, SortOrder.ASC)
    return NoSortResultSort()