from datetime import datetime, timedelta, timezone

import pytest

from promengine.model import labels_from_strings
from promengine.remote import (
    RemoteEndpoints,
    RemoteEngine,
    StaticEndpoints,
    new_static_endpoints,
)


class _FakeEngine(RemoteEngine):
    def __init__(self, mint, maxt, label_sets):
        self._mint = mint
        self._maxt = maxt
        self._label_sets = label_sets

    def max_t(self):
        return self._maxt

    def min_t(self):
        return self._mint

    def label_sets(self):
        return self._label_sets

    def new_range_query(self, query, start, end, interval, opts=None):
        return (query, start, end, interval, opts)


def _engine(pod):
    return _FakeEngine(0, 1800, [labels_from_strings("pod", pod)])


def test_static_endpoints_returns_engines_in_order():
    first, second = _engine("nginx-1"), _engine("nginx-2")
    endpoints = new_static_endpoints([first, second])
    assert endpoints.engines() == [first, second]


def test_new_static_endpoints_is_remote_endpoints():
    endpoints = new_static_endpoints([])
    assert isinstance(endpoints, RemoteEndpoints)
    assert isinstance(endpoints, StaticEndpoints)
    assert endpoints.engines() == []


def test_static_endpoints_not_affected_by_later_mutation():
    engines = [_engine("nginx-1")]
    endpoints = StaticEndpoints(engines)
    engines.append(_engine("nginx-2"))
    assert len(endpoints.engines()) == 1


def test_fake_engine_exposes_interface():
    engine = _engine("nginx-1")
    endpoints = new_static_endpoints([engine])
    (only,) = endpoints.engines()
    assert only.min_t() == 0
    assert only.max_t() == 1800
    assert only.label_sets()[0].get("pod") == "nginx-1"
    start = datetime.fromtimestamp(0, tz=timezone.utc)
    end = datetime.fromtimestamp(1800, tz=timezone.utc)
    result = only.new_range_query("foo", start, end, timedelta(seconds=30))
    assert result[0] == "foo"
    assert result[1:3] == (start, end)


def test_remote_engine_is_abstract():
    with pytest.raises(TypeError):
        RemoteEngine()


def test_incomplete_remote_engine_cannot_be_built():
    class Partial(RemoteEngine):
        def max_t(self):
            return 0

    with pytest.raises(TypeError):
        new_static_endpoints([Partial()])

    endpoints = new_static_endpoints([_engine("nginx-1")])
    assert endpoints.engines()[0].max_t() == 1800


def test_remote_endpoints_is_abstract():
    with pytest.raises(TypeError):
        RemoteEndpoints()