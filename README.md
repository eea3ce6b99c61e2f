# promengine

`promengine` is the front end of a PromQL-style query engine. You supply the
parser and the executor as plain callables. `promengine` applies the logical
optimizers and runs the executor's operator. It then turns the operator's
step vectors into the value a PromQL client expects: an instant vector, a
range matrix, a scalar or a string.

## Modules

- `promengine.model` holds the data types.
  - Labels: `Labels`, with `get`, `keep`, `drop` and `to_bytes`, plus
    `labels_from_strings` and `compare_labels`.
  - Points and series: `FPoint`, `HPoint`, `Series` and `Sample`.
  - Values: `Scalar` and `String`.
  - `StepVector`, the values an operator returns for one evaluation step.
  - `Result`, with `vector()`, `matrix()` and `scalar()`.
- `promengine.sorting` decides result order.
  - `SortOrder` and `value_compare`.
  - `new_result_sort`, which picks one of `SortFuncResultSort`,
    `AggregateResultSort` or `NoSortResultSort`.
- `promengine.remote` defines the remote interfaces.
  - The abstract `RemoteEngine` and `RemoteEndpoints`.
  - `StaticEndpoints` and `new_static_endpoints`.
- `promengine.engine` runs queries.
  - `Opts`, `new`, `Engine` and `CompatibilityQuery`.
  - `LocalRemoteEngine` and `new_remote_engine`.
  - `DistributedEngine` and `new_distributed_engine`.
  - `explain` and `contains_duplicate_label_set`.
  - `EngineMetrics`, `QueryType`, `NotSupportedExprError` and
    `ExprNotImplementedError`.

## Behaviour

### Creating an engine

`new(opts)` builds an `Engine`.

- `Opts.parser` and `Opts.executor` are required. Without them `new` raises
  `ValueError`.
- `lookback_delta` defaults to 5 minutes.
- `ext_lookback_delta` defaults to 1 hour.
- `logical_optimizers` replaces `default_optimizers` when it is set.
- When `enable_x_functions` is set, the `xdelta`, `xincrease` and `xrate`
  entries of `Opts.x_functions` are copied into `Opts.functions`.

### Creating queries

- The parser is called as `parser(query)`. It returns an expression whose
  `type` is `"vector"`, `"matrix"`, `"scalar"` or `"string"`; `type` may also
  be a method that returns one of these. A string expression also carries
  `val`.
- Each optimizer is called as `optimizer(expr, plan_options)`.
- The executor is called as
  `executor(expr, queryable, start, end, step, lookback_delta, ext_lookback_delta)`.
  It returns an operator with `series()`, `next()` and `explain()`.
- `Engine.new_instant_query(queryable, query, ts, opts=None)` and
  `Engine.new_range_query(queryable, query, start, end, step, opts=None)`
  return a `CompatibilityQuery`.
- Per-query `opts` is a mapping. A missing or non-positive `lookback_delta`
  in it is replaced by the engine's default.
- A range query over anything other than a scalar or instant vector raises
  `ValueError`.

### Fallback

An executor error is sent to the fallback engine (`Opts.engine`) when three
things hold:

- The error is a `NotSupportedExprError` or `ExprNotImplementedError`, either
  directly or through `__cause__`.
- `disable_fallback` is off.
- A fallback engine is configured.

In that case the fallback engine's query is returned. Otherwise the error is
raised. `EngineMetrics.queries` counts the queries created under `"true"`
(fallback) or `"false"`. `EngineMetrics.current_queries` counts the queries
running now.

### Running a query

`CompatibilityQuery.exec()` returns a `Result`.

- A string expression gives a `String` value straight away.
- A range query gives a matrix of the non-empty series, sorted by labels.
- An instant vector query gives one `Sample` per non-empty series, stamped
  with the evaluation time. The samples are then ordered:
  - `sort` ascending and `sort_desc` descending, by value.
  - `topk` and `bottomk` by their grouping labels first, then by value
    (descending for `topk`, ascending for `bottomk`).
  - NaN values always go last.
  - Any other expression keeps the operator's order.
- A scalar query gives the first value, or NaN when there is none.

Errors do not raise. They are put into `Result.err`:

- Duplicate label sets give a `ValueError`.
- `cancel()` gives a `CancelledError`.
- Passing `Opts.timeout` gives a `TimeoutError`.
- Arithmetic, lookup, attribute, type and assertion errors are logged. They
  come back as a `RuntimeError` whose message starts `unexpected error:`.

`Result.vector()`, `matrix()` and `scalar()` raise the stored error if there
is one. They raise `TypeError` when the value has another shape.

`CompatibilityQuery` is a context manager, and `close()` cancels the query.
`stats()` returns a dict in which timers and samples are not collected.

### Explaining and distributing

- When `Opts.debug_writer` is set, each new query's operator tree is written
  to it with `explain`.
- `new_distributed_engine(opts, endpoints)` uses
  `opts.distributed_optimizer(endpoints)` as its only optimizer. It truncates
  query times and the step to whole seconds.
- `new_remote_engine` wraps a local engine and queryable as a
  `RemoteEngine`.

## Example

```python
from datetime import datetime, timezone
from types import SimpleNamespace

from promengine.engine import Opts, new
from promengine.model import StepVector


class OneValue:
    def __init__(self, t):
        self._steps = [[StepVector(t=t, sample_ids=[0], samples=[42.0])]]

    def series(self):
        return []

    def next(self):
        return self._steps.pop() if self._steps else None

    def explain(self):
        return "[*OneValue]", []


def parse(query):
    return SimpleNamespace(type="scalar")


def execute(expr, queryable, start, end, step, lookback, ext_lookback):
    return OneValue(int(start.timestamp() * 1000))


engine = new(Opts(parser=parse, executor=execute))
ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
with engine.new_instant_query(None, "42", ts) as query:
    result = query.exec()
print(result.scalar())  # Scalar(v=42.0, t=1704067200000)
```

## What it does not do

`promengine` has no PromQL parser, no logical optimizers of its own, no
operators or functions that evaluate expressions, and no storage. These must
be supplied through `Opts`. It offers no HTTP API and no command-line
program. Metrics are kept as plain counters on `Engine.metrics` and are not
exported anywhere.

## Running the tests

```
pip install -e .[test]
pytest
```