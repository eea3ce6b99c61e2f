"""Query engine that plans, executes and shapes the results of PromQL queries.

The caller supplies ``parser(query)`` returning an expression (with ``type``
and, for strings, ``val``), optimizers ``optimizer(expr, plan_options)``, and
``executor(expr, queryable, start, end, step, lookback, ext_lookback)``
returning an operator with ``series()``, ``next()`` and ``explain()``.
"""

from __future__ import annotations

import dataclasses
import functools
import logging
import math
import threading
import time
from concurrent.futures import CancelledError
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import IO, Any, Callable, Iterable, Mapping, MutableMapping, Sequence

from promengine.model import FPoint, HPoint, Labels, Result, Sample, Scalar, Series, String, compare_labels
from promengine.remote import RemoteEndpoints, RemoteEngine
from promengine.sorting import ResultSorter, new_result_sort

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_X_FUNCTIONS = ("xdelta", "xincrease", "xrate")
_DOCUMENTED_TYPES = {"vector": "instant vector", "matrix": "range vector", "scalar": "scalar", "string": "string"}
_CANCELLABLE_OPERATOR = "[*CancellableOperator]"
# Programming errors raised while running a query; reported as unexpected.
_RUNTIME_ERRORS = (ArithmeticError, LookupError, AttributeError, TypeError, AssertionError)

_log = logging.getLogger(__name__)


class QueryType(IntEnum):
    INSTANT = 1
    RANGE = 2


class NotSupportedExprError(Exception):
    """The expression is not supported by the executor."""


class ExprNotImplementedError(Exception):
    """The expression uses a feature the executor does not implement yet."""


class EngineMetrics:
    """Counters kept by an engine: queries running now and queries created."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.current_queries = 0
        self.queries: dict[str, int] = {"true": 0, "false": 0}

    def _running(self, delta: int) -> None:
        with self._lock:
            self.current_queries += delta

    def _count_query(self, fallback: bool) -> None:
        with self._lock:
            self.queries["true" if fallback else "false"] += 1


@dataclass(frozen=True)
class _PlanOptions:
    start: datetime
    end: datetime
    step: timedelta
    lookback_delta: timedelta


Optimizer = Callable[[Any, _PlanOptions], Any]


@dataclass
class Opts:
    """Engine configuration; ``logical_optimizers`` replaces the defaults when set."""

    parser: Callable[[str], Any] | None = None
    executor: Callable[..., Any] | None = None
    logger: logging.Logger | None = None
    lookback_delta: timedelta = timedelta(0)
    ext_lookback_delta: timedelta = timedelta(0)
    timeout: timedelta | None = None
    logical_optimizers: Sequence[Optimizer] | None = None
    default_optimizers: Sequence[Optimizer] = field(default_factory=list)
    disable_fallback: bool = False
    debug_writer: IO[str] | None = None
    enable_x_functions: bool = False
    functions: MutableMapping[str, Any] | None = None
    x_functions: Mapping[str, Any] | None = None
    engine: Any = None
    distributed_optimizer: Callable[[RemoteEndpoints], Optimizer] | None = None


def _expr_type(expr: Any) -> str:
    value_type = expr.type
    return value_type() if callable(value_type) else value_type


def _to_ms(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return (ts - _EPOCH) // timedelta(milliseconds=1)


def _truncate_duration(duration: timedelta) -> timedelta:
    micros = duration // timedelta(microseconds=1)
    seconds = abs(micros) // 1_000_000
    return timedelta(seconds=seconds if micros >= 0 else -seconds)


def _error_is(err: BaseException | None, kinds: tuple[type, ...]) -> bool:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, kinds):
            return True
        seen.add(id(err))
        err = err.__cause__
    return False


def contains_duplicate_label_set(series: Sequence[Labels]) -> bool:
    """Return whether two of the label sets are identical."""
    seen: set[bytes] = set()
    for labels in series:
        key = labels.to_bytes()
        if key in seen:
            return True
        seen.add(key)
    return False


def explain(writer: IO[str], operator: Any) -> None:
    """Write the operator tree as an indented, human-readable tree."""
    _explain(writer, operator, "", "")


def _explain(writer: IO[str], operator: Any, indent: str, indent_next: str) -> None:
    me, children = operator.explain()
    children = list(children)
    writer.write(indent + me)
    if not children:
        writer.write("\n")
        return
    if me == _CANCELLABLE_OPERATOR:
        writer.write(": ")
        _explain(writer, children[0], "", indent_next)
        return
    writer.write(":\n")
    for index, child in enumerate(children):
        if index == len(children) - 1:
            _explain(writer, child, indent_next + "└──", indent_next + "   ")
        else:
            _explain(writer, child, indent_next + "├──", indent_next + "│  ")


class Engine:
    """Runs queries with the configured executor, falling back when it cannot."""

    def __init__(
        self,
        *,
        parser: Callable[[str], Any],
        executor: Callable[..., Any],
        prom: Any,
        logger: logging.Logger,
        lookback_delta: timedelta,
        ext_lookback_delta: timedelta,
        logical_optimizers: Sequence[Optimizer],
        timeout: timedelta | None,
        debug_writer: IO[str] | None,
        disable_fallback: bool,
    ) -> None:
        self._parser = parser
        self._executor = executor
        self._prom = prom
        self.logger = logger
        self.lookback_delta = lookback_delta
        self.ext_lookback_delta = ext_lookback_delta
        self.logical_optimizers = list(logical_optimizers)
        self.timeout = timeout
        self._debug_writer = debug_writer
        self.disable_fallback = disable_fallback
        self.metrics = EngineMetrics()

    def set_query_logger(self, logger: Any) -> None:
        if self._prom is not None:
            self._prom.set_query_logger(logger)

    def trigger_fallback(self, err: BaseException | None) -> bool:
        """Return whether ``err`` should send the query to the fallback engine."""
        if self.disable_fallback:
            return False
        return _error_is(err, (NotSupportedExprError, ExprNotImplementedError))

    def _query_opts(self, opts: Mapping[str, Any] | None) -> dict[str, Any]:
        resolved = dict(opts or {})
        lookback = resolved.get("lookback_delta")
        if lookback is None or lookback <= timedelta(0):
            resolved["lookback_delta"] = self.lookback_delta
        return resolved

    def _build(self, expr, queryable, start, end, step, plan_step, lookback, fall_back):
        plan = _PlanOptions(start, end, plan_step, lookback)
        for optimizer in self.logical_optimizers:
            expr = optimizer(expr, plan)
        try:
            operator = self._executor(expr, queryable, start, end, step, lookback, self.ext_lookback_delta)
        except Exception as err:
            if self.trigger_fallback(err) and self._prom is not None:
                self.metrics._count_query(fallback=True)
                return None, fall_back()
            self.metrics._count_query(fallback=False)
            raise
        self.metrics._count_query(fallback=False)
        if self._debug_writer is not None:
            try:
                explain(self._debug_writer, operator)
            except OSError:
                pass
        return operator, None

    def new_instant_query(self, queryable: Any, query: str, ts: datetime, opts: Mapping[str, Any] | None = None) -> Any:
        """Create a query evaluated at the single time ``ts``."""
        expr = self._parser(query)
        query_opts = self._query_opts(opts)
        # Decided before optimizers run, since they may remove sort functions.
        result_sort = new_result_sort(expr)
        operator, fallback_query = self._build(
            expr, queryable, ts, ts, timedelta(0), timedelta(microseconds=1), query_opts["lookback_delta"],
            lambda: self._prom.new_instant_query(queryable, query, ts, query_opts),
        )
        if fallback_query is not None:
            return fallback_query
        return CompatibilityQuery(
            engine=self, operator=operator, expr=expr, query_type=QueryType.INSTANT,
            ts=ts, opts=query_opts, result_sort=result_sort,
        )

    def new_range_query(
        self, queryable: Any, query: str, start: datetime, end: datetime, step: timedelta,
        opts: Mapping[str, Any] | None = None,
    ) -> Any:
        """Create a query evaluated every ``step`` from ``start`` to ``end``."""
        expr = self._parser(query)
        value_type = _expr_type(expr)
        if value_type not in ("vector", "scalar"):
            documented = _DOCUMENTED_TYPES.get(value_type, value_type)
            raise ValueError(
                f'invalid expression type "{documented}" for range query, must be Scalar or instant Vector'
            )
        query_opts = self._query_opts(opts)
        operator, fallback_query = self._build(
            expr, queryable, start, end, step, step, query_opts["lookback_delta"],
            lambda: self._prom.new_range_query(queryable, query, start, end, step, query_opts),
        )
        if fallback_query is not None:
            return fallback_query
        return CompatibilityQuery(
            engine=self, operator=operator, expr=expr, query_type=QueryType.RANGE,
            ts=_EPOCH, opts=query_opts, result_sort=None,
        )


class CompatibilityQuery:
    """A prepared query; :meth:`exec` runs it and returns a :class:`Result`."""

    def __init__(
        self, *, engine: Engine, operator: Any, expr: Any, query_type: QueryType,
        ts: datetime, opts: Mapping[str, Any], result_sort: ResultSorter | None,
    ) -> None:
        self._engine = engine
        self._operator = operator
        self._expr = expr
        self.query_type = query_type
        self._ts = ts
        self.opts = dict(opts)
        self._result_sort = result_sort
        self._cancel_event: threading.Event | None = None

    def exec(self) -> Result:
        value_type = _expr_type(self._expr)
        ts_ms = _to_ms(self._ts)
        if value_type == "string":
            return Result(value=String(v=self._expr.val, t=ts_ms), value_type="string")
        if self.query_type is QueryType.INSTANT and value_type not in ("vector", "matrix", "scalar"):
            raise ValueError(f'unexpected expression type "{value_type}"')

        metrics = self._engine.metrics
        metrics._running(1)
        cancel_event = self._cancel_event = threading.Event()
        timeout = self._engine.timeout
        deadline = None if timeout is None else time.monotonic() + timeout.total_seconds()
        try:
            return self._shape(self._collect(cancel_event, deadline), value_type, ts_ms)
        except _RUNTIME_ERRORS as err:
            self._engine.logger.error("runtime panic in engine expr=%s err=%s", self._expr, err, exc_info=err)
            wrapped = RuntimeError(f"unexpected error: {err}")
            wrapped.__cause__ = err
            return Result(value=[], value_type="vector", err=wrapped)
        except Exception as err:
            return Result(value=[], value_type="vector", err=err)
        finally:
            metrics._running(-1)

    def _collect(self, cancel_event: threading.Event, deadline: float | None) -> list[Series]:
        result_series = list(self._operator.series() or [])
        if contains_duplicate_label_set(result_series):
            raise ValueError("vector cannot contain metrics with the same labelset")
        series = [Series(metric=labels) for labels in result_series]
        while True:
            if cancel_event.is_set():
                raise CancelledError("context canceled")
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError("context deadline exceeded")
            vectors = self._operator.next()
            if vectors is None:
                return series
            # Series may be empty while samples are present, e.g. scalar(metric).
            if not series and vectors:
                series = [Series() for _ in vectors[0].samples]
            for vector in vectors:
                for sid, value in zip(vector.sample_ids, vector.samples):
                    series[sid].floats.append(FPoint(t=vector.t, f=value))
                for sid, hist in zip(vector.histogram_ids, vector.histograms):
                    series[sid].histograms.append(HPoint(t=vector.t, h=hist))

    def _shape(self, series: list[Series], value_type: str, ts_ms: int) -> Result:
        if self.query_type is QueryType.RANGE:
            matrix = sorted(
                (s for s in series if s.floats or s.histograms),
                key=functools.cmp_to_key(lambda a, b: compare_labels(a.metric, b.metric)),
            )
            return Result(value=matrix, value_type="matrix")
        if value_type == "matrix":
            return Result(value=series, value_type="matrix")
        if value_type == "vector":
            # Force the evaluation timestamp onto every point.
            samples = [
                Sample(metric=s.metric, t=ts_ms, f=s.floats[0].f) if s.floats
                else Sample(metric=s.metric, t=ts_ms, h=s.histograms[0].h)
                for s in series
                if s.floats or s.histograms
            ]
            if self._result_sort is not None:
                samples = self._result_sort.sort(samples)
            return Result(value=samples, value_type="vector")
        value = series[0].floats[0].f if series else math.nan
        return Result(value=Scalar(v=value, t=ts_ms), value_type="scalar")

    def stats(self) -> dict[str, Any]:
        """Return query statistics; timers and samples are not collected."""
        per_step = bool(self.opts.get("enable_per_step_stats", False))
        return {"timers": {}, "samples": {"enable_per_step_stats": per_step}}

    def cancel(self) -> None:
        if self._cancel_event is not None:
            self._cancel_event.set()
            self._cancel_event = None

    def close(self) -> None:
        self.cancel()

    def __enter__(self) -> CompatibilityQuery:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __str__(self) -> str:
        return str(self._expr)


class LocalRemoteEngine(RemoteEngine):
    """A remote engine backed by a local engine and queryable."""

    def __init__(self, queryable: Any, engine: Engine, mint: int, maxt: int, label_sets: Iterable[Labels]) -> None:
        self._queryable = queryable
        self._engine = engine
        self._mint = mint
        self._maxt = maxt
        self._label_sets = list(label_sets)

    def max_t(self) -> int:
        return self._maxt

    def min_t(self) -> int:
        return self._mint

    def label_sets(self) -> list[Labels]:
        return list(self._label_sets)

    def new_range_query(self, query, start, end, interval, opts=None) -> Any:
        return self._engine.new_range_query(self._queryable, query, start, end, interval, opts)


class DistributedEngine:
    """An engine that spreads queries over remote endpoints."""

    def __init__(self, endpoints: RemoteEndpoints, remote_engine: Engine) -> None:
        self.endpoints = endpoints
        self._remote_engine = remote_engine
        self.query_logger: Any = None

    def set_query_logger(self, logger: Any) -> None:
        """Remember the logger; distributed queries do not write to it."""
        self.query_logger = logger

    def new_instant_query(self, queryable, query, ts, opts=None) -> Any:
        # Some remote clients only support second precision.
        return self._remote_engine.new_instant_query(queryable, query, ts.replace(microsecond=0), opts)

    def new_range_query(self, queryable, query, start, end, interval, opts=None) -> Any:
        return self._remote_engine.new_range_query(
            queryable, query, start.replace(microsecond=0), end.replace(microsecond=0),
            _truncate_duration(interval), opts,
        )


def new(opts: Opts | None = None) -> Engine:
    """Create an engine, filling in defaults for unset options."""
    opts = dataclasses.replace(opts) if opts is not None else Opts()
    logger = opts.logger or _log
    lookback = opts.lookback_delta
    if not lookback:
        lookback = timedelta(minutes=5)
        logger.debug("lookback delta is zero, setting to default value %s", lookback)
    ext_lookback = opts.ext_lookback_delta
    if not ext_lookback:
        ext_lookback = timedelta(hours=1)
        logger.debug("external lookback delta is zero, setting to default value %s", ext_lookback)
    if opts.enable_x_functions and opts.functions is not None and opts.x_functions:
        for name in _X_FUNCTIONS:
            if name in opts.x_functions:
                opts.functions[name] = opts.x_functions[name]
    if opts.parser is None or opts.executor is None:
        raise ValueError("engine options need both a parser and an executor")
    optimizers = opts.default_optimizers if opts.logical_optimizers is None else opts.logical_optimizers
    return Engine(
        parser=opts.parser,
        executor=opts.executor,
        prom=opts.engine,
        logger=logger,
        lookback_delta=lookback,
        ext_lookback_delta=ext_lookback,
        logical_optimizers=optimizers,
        timeout=opts.timeout,
        debug_writer=opts.debug_writer,
        disable_fallback=opts.disable_fallback,
    )


def new_remote_engine(opts: Opts, queryable: Any, mint: int, maxt: int, label_sets: Iterable[Labels]) -> LocalRemoteEngine:
    """Create a remote engine over a local queryable."""
    return LocalRemoteEngine(queryable, new(opts), mint, maxt, label_sets)


def new_distributed_engine(opts: Opts, endpoints: RemoteEndpoints) -> DistributedEngine:
    """Create an engine whose only optimizer distributes work to the endpoints."""
    opts = dataclasses.replace(opts)
    opts.logical_optimizers = [opts.distributed_optimizer(endpoints)] if opts.distributed_optimizer else []
    return DistributedEngine(endpoints, new(opts))