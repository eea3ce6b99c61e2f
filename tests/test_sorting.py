import math
from types import SimpleNamespace

import pytest

from promengine.model import Sample, labels_from_strings
from promengine.sorting import (
    AggregateResultSort,
    NoSortResultSort,
    SortFuncResultSort,
    SortOrder,
    new_result_sort,
    value_compare,
)


def _sample(pod, series, value):
    return Sample(labels_from_strings("pod", pod, "series", series), 0, value)


@pytest.fixture
def samples():
    return [
        _sample("nginx-3", "1", 8.0),
        _sample("nginx-1", "1", 1.0),
        _sample("nginx-5", "2", 8.0),
        _sample("nginx-2", "1", 2.0),
        _sample("nginx-4", "2", 6.0),
    ]


def test_value_compare_orders():
    assert value_compare(SortOrder.ASC, 1.0, 2.0) is True
    assert value_compare(SortOrder.ASC, 2.0, 1.0) is False
    assert value_compare(SortOrder.DESC, 2.0, 1.0) is True
    assert value_compare(SortOrder.DESC, 1.0, 2.0) is False


def test_value_compare_nan_on_right_is_true():
    assert value_compare(SortOrder.ASC, 1.0, math.nan) is True
    assert value_compare(SortOrder.DESC, 1.0, math.nan) is True
    assert value_compare(SortOrder.ASC, math.nan, 1.0) is False


def test_sort_ascending(samples):
    ordered = SortFuncResultSort(SortOrder.ASC).sort(samples)
    values = [s.f for s in ordered]
    assert values == sorted(values)
    assert sorted(ordered, key=id) == sorted(samples, key=id)


def test_sort_descending(samples):
    ordered = SortFuncResultSort(SortOrder.DESC).sort(samples)
    values = [s.f for s in ordered]
    assert values == sorted(values, reverse=True)


def test_sort_puts_nan_last():
    items = [
        _sample("nginx-3", "1", math.nan),
        _sample("nginx-1", "1", 1.0),
        _sample("nginx-2", "1", 2.0),
    ]
    for order in SortOrder:
        ordered = SortFuncResultSort(order).sort(items)
        assert math.isnan(ordered[-1].f)


def test_sort_does_not_mutate_input(samples):
    before = list(samples)
    SortFuncResultSort(SortOrder.ASC).sort(samples)
    assert samples == before


def test_no_sort_keeps_order(samples):
    assert NoSortResultSort().sort(samples) == samples


def test_aggregate_sort_by_group_then_value_desc(samples):
    ordered = AggregateResultSort(("series",), True, SortOrder.DESC).sort(samples)
    keys = [(s.metric.get("series"), s.f) for s in ordered]
    assert [k[0] for k in keys] == ["1", "1", "1", "2", "2"]
    assert [k[1] for k in keys[:3]] == [8.0, 2.0, 1.0]
    assert [k[1] for k in keys[3:]] == [8.0, 6.0]


def test_aggregate_sort_without_matches_by(samples):
    by = AggregateResultSort(("series",), True, SortOrder.ASC).sort(samples)
    without = AggregateResultSort(("pod",), False, SortOrder.ASC).sort(samples)
    assert by == without
    assert [s.f for s in by[:3]] == [1.0, 2.0, 8.0]


def test_new_result_sort_for_sort_functions():
    sort_call = SimpleNamespace(func=SimpleNamespace(name="sort"))
    desc_call = SimpleNamespace(func=SimpleNamespace(name="sort_desc"))
    other_call = SimpleNamespace(func=SimpleNamespace(name="rate"))
    assert new_result_sort(sort_call) == SortFuncResultSort(SortOrder.ASC)
    assert new_result_sort(desc_call) == SortFuncResultSort(SortOrder.DESC)
    assert new_result_sort(other_call) == NoSortResultSort()


def test_new_result_sort_for_topk_and_bottomk():
    topk = SimpleNamespace(op="topk", grouping=["series"], without=False)
    bottomk = SimpleNamespace(op="bottomk", grouping=["series"], without=True)
    assert new_result_sort(topk) == AggregateResultSort(
        ("series",), True, SortOrder.DESC
    )
    assert new_result_sort(bottomk) == AggregateResultSort(
        ("series",), False, SortOrder.ASC
    )


def test_new_result_sort_defaults_to_no_sort():
    summed = SimpleNamespace(op="sum", grouping=["pod"], without=False)
    selector = SimpleNamespace(name="http_requests_total")
    assert new_result_sort(summed) == NoSortResultSort()
    assert new_result_sort(selector) == NoSortResultSort()