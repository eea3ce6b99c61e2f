"""Labels, samples, series and query results."""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Mapping

METRIC_NAME = "__name__"

_LABEL_SEP = b"\xfe"
_SEP = b"\xff"


@functools.total_ordering
class Labels:
    """An immutable set of label name/value pairs, kept sorted by name."""

    __slots__ = ("_pairs",)

    def __init__(
        self, pairs: Iterable[tuple[str, str]] | Mapping[str, str] = ()
    ) -> None:
        items = pairs.items() if isinstance(pairs, Mapping) else pairs
        self._pairs: tuple[tuple[str, str], ...] = tuple(sorted(dict(items).items()))

    def get(self, name: str) -> str:
        """Return the value of ``name``, or an empty string if it is absent."""
        for label_name, value in self._pairs:
            if label_name == name:
                return value
        return ""

    def keep(self, *args: str) -> Labels:
        """Return labels holding only the given names."""
        wanted = set(args)
        return Labels(pair for pair in self._pairs if pair[0] in wanted)

    def drop(self, *args: str) -> Labels:
        """Return labels without the given names."""
        unwanted = set(args)
        return Labels(pair for pair in self._pairs if pair[0] not in unwanted)

    def to_bytes(self) -> bytes:
        """Serialise the labels into a byte string unique to this label set."""
        parts = [_LABEL_SEP]
        for index, (name, value) in enumerate(self._pairs):
            if index:
                parts.append(_SEP)
            parts.append(name.encode())
            parts.append(_SEP)
            parts.append(value.encode())
        return b"".join(parts)

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self._pairs)

    def __len__(self) -> int:
        return len(self._pairs)

    def __contains__(self, name: object) -> bool:
        return any(label_name == name for label_name, _ in self._pairs)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Labels):
            return NotImplemented
        return self._pairs == other._pairs

    def __lt__(self, other: Labels) -> bool:
        if not isinstance(other, Labels):
            return NotImplemented
        return compare_labels(self, other) < 0

    def __hash__(self) -> int:
        return hash(self._pairs)

    def __repr__(self) -> str:
        inner = ", ".join(f'{name}="{value}"' for name, value in self._pairs)
        return "{" + inner + "}"


def labels_from_strings(*args: str) -> Labels:
    """Build labels from alternating names and values."""
    if len(args) % 2:
        raise ValueError("invalid number of strings")
    return Labels(zip(args[::2], args[1::2]))


def compare_labels(left: Labels, right: Labels) -> int:
    """Order two label sets: negative, zero or positive."""
    for (left_name, left_value), (right_name, right_value) in zip(left, right):
        if left_name != right_name:
            return -1 if left_name < right_name else 1
        if left_value != right_value:
            return -1 if left_value < right_value else 1
    return len(left) - len(right)


@dataclass
class FPoint:
    """A float value at a timestamp in milliseconds."""

    t: int
    f: float


@dataclass
class HPoint:
    """A histogram value at a timestamp in milliseconds."""

    t: int
    h: Any


@dataclass
class Series:
    """A labelled stream of float and histogram points."""

    metric: Labels = field(default_factory=Labels)
    floats: list[FPoint] = field(default_factory=list)
    histograms: list[HPoint] = field(default_factory=list)

    def __lt__(self, other: Series) -> bool:
        return compare_labels(self.metric, other.metric) < 0


@dataclass
class Sample:
    """A single labelled value at a timestamp."""

    metric: Labels
    t: int
    f: float = 0.0
    h: Any = None


@dataclass
class Scalar:
    """A scalar result at a timestamp."""

    v: float
    t: int


@dataclass
class String:
    """A string result at a timestamp."""

    v: str
    t: int


@dataclass
class StepVector:
    """Values produced by an operator for one evaluation step."""

    t: int
    sample_ids: list[int] = field(default_factory=list)
    samples: list[float] = field(default_factory=list)
    histogram_ids: list[int] = field(default_factory=list)
    histograms: list[Any] = field(default_factory=list)


@dataclass
class Result:
    """The outcome of running a query.

    ``value_type`` is one of ``"vector"``, ``"matrix"``, ``"scalar"`` or ``"string"``.
    """

    value: Any = field(default_factory=list)
    value_type: str = "vector"
    err: BaseException | None = None
    warnings: list[str] = field(default_factory=list)

    def _check(self, wanted: str, message: str) -> None:
        if self.err is not None:
            raise self.err
        if self.value_type != wanted:
            raise TypeError(message)

    def vector(self) -> list[Sample]:
        """Return the samples of an instant vector result."""
        self._check("vector", "query result is not a Vector")
        return self.value

    def matrix(self) -> list[Series]:
        """Return the series of a range vector result."""
        self._check("matrix", "query result is not a range Vector")
        return self.value

    def scalar(self) -> Scalar:
        """Return the value of a scalar result."""
        self._check("scalar", "query result is not a Scalar")
        return self.value