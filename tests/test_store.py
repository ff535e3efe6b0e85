import math

import pytest

from app.providers.store.labels import Matcher
from app.providers.store.sqlite_store import SampleRow, SQLiteStore, StoreError


def _store(tmp_path):
    store = SQLiteStore(db_path=str(tmp_path / "beacon.db"))
    store.init_db()
    return store


def _row(ts, value, name="cpu", **labels):
    return SampleRow(labels={"__name__": name, **labels}, ts=ts, value=value)


def test_append_rejects_out_of_order_and_duplicates(tmp_path):
    store = _store(tmp_path)
    res = store.append([_row(10, 1.0, host="a"), _row(20, 2.0, host="a")])
    assert res.appended == 2

    res = store.append([_row(15, 9.0, host="a"), _row(20, 9.0, host="a"), _row(30, 3.0, host="a")])
    assert (res.appended, res.duplicates, res.out_of_order) == (1, 1, 1)

    # a fresh store instance reads the latest timestamp from disk
    again = SQLiteStore(db_path=store.db_path)
    assert again.append([_row(25, 1.0, host="a")]).out_of_order == 1


def test_append_without_name_writes_nothing(tmp_path):
    store = _store(tmp_path)
    with pytest.raises(StoreError):
        store.append([_row(1, 1.0), SampleRow(labels={"host": "a"}, ts=1, value=1.0)])
    assert store.stats() == {"series": 0, "samples": 0}


def test_select_is_left_open_and_returns_pandas_series(tmp_path):
    store = _store(tmp_path)
    store.append([_row(t, float(t), host="a") for t in (10, 20, 30, 40)])
    store.append([_row(t, float(t), name="mem", host="a") for t in (10, 20)])

    [sd] = store.select([Matcher("__name__", "=", "cpu")], 10, 30)
    assert sd.labels == {"__name__": "cpu", "host": "a"}
    assert list(sd.samples.index) == [20.0, 30.0]
    assert list(sd.samples.values) == [20.0, 30.0]


def test_empty_label_values_are_the_same_series(tmp_path):
    store = _store(tmp_path)
    store.append([_row(1, 1.0, host="a", zone="")])
    store.append([_row(2, 2.0, host="a")])
    assert store.stats() == {"series": 1, "samples": 2}


def test_instant_respects_lookback_and_stale_markers(tmp_path):
    store = _store(tmp_path)
    store.append([_row(100, 1.0, host="a"), _row(100, 5.0, host="b")])
    store.append([_row(110, 2.0, host="a")])

    got = {lb["host"]: (ts, v) for lb, ts, v in store.instant([Matcher("__name__", "=", "cpu")], 120, 300)}
    assert got == {"a": (110.0, 2.0), "b": (100.0, 5.0)}

    # outside the lookback window
    assert store.instant([Matcher("__name__", "=", "cpu")], 500, 300) == []

    store.mark_stale([{"__name__": "cpu", "host": "b"}], 115)
    got = store.instant([Matcher("__name__", "=", "cpu")], 120, 300)
    assert [lb["host"] for lb, _, _ in got] == ["a"]

    # stale samples are not values in range selections
    [sd] = store.select([Matcher("host", "=", "b")], 0, 200)
    assert list(sd.samples.index) == [100.0]
    assert sd.stale_at == [115.0]


def test_nan_values_round_trip(tmp_path):
    store = _store(tmp_path)
    store.append([_row(1, float("nan"), host="a")])
    [(_, _, v)] = store.instant([Matcher("__name__", "=", "cpu")], 1, 300)
    assert math.isnan(v)


def test_regex_and_negative_matchers(tmp_path):
    store = _store(tmp_path)
    store.append([_row(1, 1.0, host=h) for h in ("a", "b", "c")])
    hosts = sorted(lb["host"] for lb in store.series([Matcher("__name__", "=", "cpu"), Matcher("host", "=~", "a|b")]))
    assert hosts == ["a", "b"]
    hosts = sorted(lb["host"] for lb in store.series([Matcher("host", "!=", "a")]))
    assert hosts == ["b", "c"]
    assert store.label_names() == ["__name__", "host"]
    assert store.label_values("host") == ["a", "b", "c"]


def test_delete_before(tmp_path):
    store = _store(tmp_path)
    store.append([_row(t, 1.0, host="a") for t in (10, 20, 30)])
    store.append([_row(10, 1.0, host="old")])
    assert store.delete_before(20) == 3
    assert store.stats() == {"series": 1, "samples": 1}
    # cache is reset, so appends after retention still work
    assert store.append([_row(40, 1.0, host="a")]).appended == 1
