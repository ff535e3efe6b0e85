import itertools
import threading
import time

import httpx
import pytest

from app.providers.store.labels import Matcher
from app.providers.store.sqlite_store import SQLiteStore
from scrape import ScrapeJobConfig, ScrapeScheduler, StaticConfig, Target, build_targets, scrape_target


METRICS = """\
# TYPE http_requests_total counter
http_requests_total{code="200",job="app"} 10
http_requests_total{code="500"} 2
"""


def _client(bodies):
    """MockTransport client; bodies maps host -> text, or status code for errors."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = bodies[request.url.host + ":" + str(request.url.port)]
        if isinstance(body, int):
            return httpx.Response(body, text="boom")
        if isinstance(body, Exception):
            raise body
        return httpx.Response(200, text=body)

    return httpx.Client(transport=httpx.MockTransport(handler))


def _target(address="h1:9100", **kw):
    return Target(job="node", url=f"http://{address}/metrics", labels={"job": "node", "instance": address}, **kw)


def _store(tmp_path):
    store = SQLiteStore(db_path=str(tmp_path / "beacon.db"))
    store.init_db()
    return store


def test_build_targets_applies_defaults_and_caps_timeout():
    job = ScrapeJobConfig(
        job_name="api",
        static_configs=[StaticConfig(targets=["a:1", "b:2"], labels={"env": "prod"})],
        metrics_path="stats",
        scrape_interval=5.0,
    )
    targets = build_targets(job, default_interval=15.0, default_timeout=10.0)
    assert [t.url for t in targets] == ["http://a:1/stats", "http://b:2/stats"]
    assert targets[0].labels == {"job": "api", "instance": "a:1", "env": "prod"}
    assert targets[0].interval == 5.0
    assert targets[0].timeout == 5.0


def test_scrape_target_success_adds_target_labels_and_synthetic_series():
    res = scrape_target(_target(), _client({"h1:9100": METRICS}), now=1000.0)
    assert res.up and res.error is None and res.scraped == 2

    by_name = {}
    for s in res.samples:
        by_name.setdefault(s.labels["__name__"], []).append(s)

    ok = by_name["http_requests_total"][0]
    # target labels win; the scraped one is kept as exported_job
    assert ok.labels["job"] == "node"
    assert ok.labels["exported_job"] == "app"
    assert ok.labels["instance"] == "h1:9100"
    assert ok.ts == 1000.0
    assert by_name["up"][0].value == 1.0
    assert by_name["scrape_samples_scraped"][0].value == 2.0


def test_honor_labels_keeps_scraped_values():
    res = scrape_target(_target(honor_labels=True), _client({"h1:9100": METRICS}), now=1.0)
    first = [s for s in res.samples if s.labels["__name__"] == "http_requests_total"][0]
    assert first.labels["job"] == "app"
    assert "exported_job" not in first.labels


@pytest.mark.parametrize(
    "body, needle",
    [
        (503, "503"),
        ("not a metric line {", "line 1"),
        (httpx.ConnectError("refused"), "refused"),
    ],
)
def test_scrape_failures_become_up_zero(body, needle):
    res = scrape_target(_target(), _client({"h1:9100": body}), now=1.0)
    assert not res.up
    assert needle in res.error
    assert [s.labels["__name__"] for s in res.samples] == ["up", "scrape_duration_seconds", "scrape_samples_scraped"]
    assert res.samples[0].value == 0.0


def test_sample_limit():
    res = scrape_target(_target(sample_limit=1), _client({"h1:9100": METRICS}), now=1.0)
    assert not res.up
    assert res.error == "sample limit exceeded"


def test_scheduler_stores_results_and_marks_vanished_series_stale(tmp_path):
    store = _store(tmp_path)
    bodies = {"h1:9100": METRICS, "h2:9100": 500}
    sched = ScrapeScheduler([_target("h1:9100"), _target("h2:9100")], store, client=_client(bodies))

    results = sched.run_once(now=100.0, force=True)
    assert len(results) == 2
    health = sched.health()
    assert health["node/http://h1:9100/metrics"].up is True
    assert health["node/http://h2:9100/metrics"].up is False
    assert "500" in health["node/http://h2:9100/metrics"].last_error

    # the 500 series disappears from the next scrape
    bodies["h1:9100"] = 'http_requests_total{code="200"} 11\n'
    sched.run_once(now=115.0, force=True)

    live = store.instant([Matcher("__name__", "=", "http_requests_total")], 120.0, 300.0)
    assert [lb["code"] for lb, _, _ in live] == ["200"]
    ups = {lb["instance"]: v for lb, _, v in store.instant([Matcher("__name__", "=", "up")], 120.0, 300.0)}
    assert ups == {"h1:9100": 1.0, "h2:9100": 0.0}


def test_scheduler_offsets_are_stable_and_missed_slots_are_skipped(tmp_path):
    t = _target(interval=10.0)
    sched = ScrapeScheduler([t], _store(tmp_path), client=_client({"h1:9100": METRICS}))

    off = ScrapeScheduler.offset(t)
    assert 0 <= off < 10.0
    assert off == ScrapeScheduler.offset(_target(interval=10.0))

    assert sched.due(0.0) == ([t] if off == 0 else [])
    first = sched.next_scrape(t)
    assert first == off

    # wake up 35s late: one scrape, then the next aligned slot in the future
    sched.run_once(now=first + 35.0)
    assert sched.next_scrape(t) == first + 40.0


def test_malformed_target_url_does_not_sink_the_batch(tmp_path):
    store = _store(tmp_path)
    bad = Target(job="node", url="http://bad:abc/metrics", labels={"job": "node", "instance": "bad:abc"})
    sched = ScrapeScheduler([_target("h1:9100"), bad], store, client=_client({"h1:9100": METRICS}))

    results = sched.run_once(now=100.0, force=True)
    assert sorted(r.up for r in results) == [False, True]
    health = sched.health()
    assert health["node/http://h1:9100/metrics"].up is True
    assert health["node/http://bad:abc/metrics"].up is False
    assert health["node/http://bad:abc/metrics"].last_scrape == 100.0

    ups = {lb["instance"]: v for lb, _, v in store.instant([Matcher("__name__", "=", "up")], 100.0, 300.0)}
    assert ups == {"h1:9100": 1.0, "bad:abc": 0.0}
    assert sched.next_scrape(bad) == 100.0 + bad.interval


def test_target_going_down_stales_only_its_own_series(tmp_path):
    store = _store(tmp_path)
    bodies = {"h1:9100": METRICS, "h2:9100": METRICS}
    sched = ScrapeScheduler([_target("h1:9100"), _target("h2:9100")], store, client=_client(bodies))
    sched.run_once(now=100.0, force=True)

    bodies["h2:9100"] = httpx.ConnectError("refused")
    sched.run_once(now=115.0, force=True)

    live = store.instant([Matcher("__name__", "=", "http_requests_total")], 120.0, 300.0)
    assert sorted((lb["instance"], lb["code"]) for lb, _, _ in live) == [("h1:9100", "200"), ("h1:9100", "500")]
    ups = {lb["instance"]: v for lb, _, v in store.instant([Matcher("__name__", "=", "up")], 120.0, 300.0)}
    assert ups == {"h1:9100": 1.0, "h2:9100": 0.0}


def test_background_thread_scrapes_and_stops(tmp_path):
    ticks = itertools.count(1000.0, 5.0)
    t = _target(interval=10.0)
    sched = ScrapeScheduler(
        [t], _store(tmp_path), client=_client({"h1:9100": METRICS}), clock=lambda: next(ticks), tick=0.01
    )
    sched.start()
    try:
        deadline = time.monotonic() + 5.0
        while sched.health()[t.key].last_scrape is None and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        started = time.monotonic()
        sched.stop()
    assert time.monotonic() - started < 2.0
    assert sched.health()[t.key].up is True
    assert sched.health()[t.key].last_scrape >= 1000.0
    assert not any(th.name == "scrape-scheduler" for th in threading.enumerate())
