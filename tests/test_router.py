import json

import pytest

from alerts.router import (
    Alert,
    AlertRouter,
    InhibitRule,
    Route,
    TokenBucket,
    NotifyEntry,
    finalize_route,
    iso,
    needs_update,
)
from app.providers.store.labels import parse_matcher


class FakeReceiver:
    def __init__(self, ok=True, send_resolved=True):
        self.ok = ok
        self.send_resolved = send_resolved
        self.sent = []

    def send(self, notification):
        self.sent.append(notification)
        return self.ok


def _alert(name="HighCPU", ends_at=None, starts_at=0.0, **labels):
    return Alert(labels={"alertname": name, **labels}, annotations={"summary": name}, starts_at=starts_at, ends_at=ends_at)


def _router(rcv=None, route=None, **kw):
    rcv = rcv or FakeReceiver()
    route = route or Route(receiver="r", group_by=["alertname"], group_wait=30, group_interval=300, repeat_interval=3600)
    kw.setdefault("resolve_timeout", 10_000)
    return AlertRouter(route, {"r": [rcv], "pager": [FakeReceiver()], "db": [FakeReceiver()]}, **kw), rcv


def _m(*texts):
    return [parse_matcher(t) for t in texts]


def test_group_wait_interval_and_repeat():
    router, rcv = _router()
    router.receive([_alert(instance="a")], now=0)

    assert router.flush(10) == []
    [n] = router.flush(30)
    assert n.status == "firing" and len(n.alerts) == 1
    assert n.group_labels == {"alertname": "HighCPU"}

    router.receive([_alert(instance="b", starts_at=40)], now=40)
    assert router.flush(40) == []  # waits for group_interval
    [n] = router.flush(330)
    assert sorted(a.labels["instance"] for a in n.alerts) == ["a", "b"]
    assert n.common_labels == {"alertname": "HighCPU"}

    # nothing new: no notification until repeat_interval
    assert router.flush(630) == []
    assert router.flush(3630) == []
    [n] = router.flush(3930)
    assert len(n.alerts) == 2
    assert len(rcv.sent) == 3


def test_old_alert_skips_group_wait():
    router, rcv = _router()
    router.receive([_alert(starts_at=-1000)], now=0)
    assert len(router.flush(0)) == 1


def test_resolution_is_notified_and_group_removed():
    router, rcv = _router()
    router.receive([_alert()], now=0)
    router.flush(30)

    router.receive([_alert(ends_at=100)], now=100)
    [n] = router.flush(330)
    assert n.status == "resolved"
    assert n.alerts[0].resolved(330)
    assert n.alerts[0].starts_at == 0
    assert router.groups() == []


def test_send_resolved_false_skips_resolution():
    router, rcv = _router(FakeReceiver(send_resolved=False))
    router.receive([_alert()], now=0)
    router.flush(30)
    router.receive([_alert(ends_at=100)], now=100)
    assert router.flush(330) == []
    assert len(rcv.sent) == 1


def test_resolve_timeout_resolves_stale_alerts():
    router, rcv = _router(resolve_timeout=300)
    router.receive([_alert()], now=0)
    router.flush(30)
    [n] = router.flush(330)
    assert n.status == "resolved"


def test_route_tree_matching_and_inheritance():
    root = finalize_route(
        Route(
            receiver="r",
            group_by=["alertname"],
            group_wait=10,
            routes=[
                Route(receiver="pager", matchers=_m('severity="critical"'), continue_=True, group_wait=0.5),
                Route(receiver="db", matchers=_m('team=~"db|storage"')),
            ],
        )
    )
    assert [r.id for r in root.routes] == ["0/0", "0/1"]
    assert root.routes[1].group_wait == 10
    assert root.routes[1].group_by == ["alertname"]
    assert root.routes[0].group_interval == 300.0

    hits = root.match({"alertname": "X", "severity": "critical", "team": "db"})
    assert [r.receiver for r in hits] == ["pager", "db"]
    assert [r.receiver for r in root.match({"alertname": "X", "team": "web"})] == ["r"]

    with pytest.raises(ValueError):
        finalize_route(Route(receiver=None))


def test_group_by_all_and_unknown_receiver():
    route = finalize_route(Route(receiver="r", group_by=["..."]))
    assert route.group_labels({"a": "1", "b": "2"}) == {"a": "1", "b": "2"}
    with pytest.raises(ValueError):
        AlertRouter(Route(receiver="missing"), {"r": []})


def test_silences_mute_until_expired():
    router, rcv = _router()
    sid = router.add_silence(_m('alertname="HighCPU"'), starts_at=0, ends_at=1000, created_by="me")
    router.receive([_alert()], now=0)
    assert router.flush(30) == []
    assert router.silenced(router.alerts()[0], 30)

    assert router.expire_silence(sid, now=50)
    assert len(router.flush(50, force=True)) == 1
    assert not router.expire_silence("nope")
    with pytest.raises(ValueError):
        router.add_silence([], starts_at=0, ends_at=10)


def test_inhibition_requires_equal_labels_and_firing_source():
    rule = InhibitRule(_m('alertname="TargetDown"'), _m('severity="warning"'), equal=["instance"])
    router, rcv = _router(inhibit_rules=[rule])
    router.receive(
        [
            _alert("TargetDown", instance="a", severity="critical"),
            _alert("HighCPU", instance="a", severity="warning"),
            _alert("HighMem", instance="b", severity="warning"),
        ],
        now=0,
    )
    sent = router.flush(30)
    names = sorted(a.name for n in sent for a in n.alerts)
    assert names == ["HighMem", "TargetDown"]

    # the source resolves: the target is no longer inhibited
    router.receive([_alert("TargetDown", ends_at=40, instance="a", severity="critical")], now=40)
    sent = router.flush(330)
    assert sorted((a.name, a.status(330)) for n in sent for a in n.alerts) == [
        ("HighCPU", "firing"),
        ("TargetDown", "resolved"),
    ]


def test_rate_limit_defers_instead_of_dropping():
    router, rcv = _router(rate_limits={"r": TokenBucket(1, 60)})
    router.receive([_alert("A"), _alert("B")], now=0)
    sent = router.flush(30)
    assert len(sent) == 1
    sent = router.flush(95)
    assert len(sent) == 1
    assert sorted(n.alerts[0].name for n in rcv.sent) == ["A", "B"]


def test_failed_delivery_is_retried():
    router, rcv = _router(FakeReceiver(ok=False))
    router.receive([_alert()], now=0)
    assert router.flush(30) == []
    rcv.ok = True
    assert len(router.flush(40)) == 1
    assert len(rcv.sent) == 2


def test_receiver_exception_counts_as_failure():
    class Boom(FakeReceiver):
        def send(self, notification):
            raise RuntimeError("boom")

    router, rcv = _router(Boom())
    router.receive([_alert()], now=0)
    assert router.flush(30) == []


def test_state_round_trip_prevents_renotification(tmp_path):
    path = str(tmp_path / "router.json")
    router, rcv = _router()
    router.add_silence(_m('alertname="Other"'), starts_at=0, ends_at=10_000, comment="maint")
    router.receive([_alert()], now=0)
    router.flush(30)
    router.save_state(path)

    again, rcv2 = _router()
    again.load_state(path)
    assert [s.comment for s in again.silences()] == ["maint"]
    again.receive([_alert()], now=60)
    assert again.flush(60, force=True) == []
    assert rcv2.sent == []


def test_payload_shape():
    router, rcv = _router(external_url="http://beacon")
    router.receive([_alert(instance="a")], now=0)
    [n] = router.flush(30)
    body = n.to_payload()
    assert body["version"] == "4"
    assert body["status"] == "firing"
    assert body["receiver"] == "r"
    assert body["externalURL"] == "http://beacon"
    [a] = body["alerts"]
    assert a["startsAt"].startswith("1970-01-01T00:00:00")
    assert a["endsAt"] == "0001-01-01T00:00:00Z"
    assert a["fingerprint"] == '{alertname="HighCPU",instance="a"}'


def test_needs_update_rules():
    assert needs_update(None, {"a"}, set(), True, 100, 0)
    assert not needs_update(None, set(), {"a"}, True, 100, 0)
    entry = NotifyEntry(firing={"a"}, resolved=set(), sent_at=0)
    assert not needs_update(entry, {"a"}, set(), True, 100, 50)
    assert needs_update(entry, {"a", "b"}, set(), True, 100, 50)
    assert needs_update(entry, {"a"}, set(), True, 100, 100)
    assert needs_update(entry, set(), {"a"}, False, 100, 50)
    assert needs_update(NotifyEntry({"a"}, set(), 0), {"a"}, {"b"}, True, 100, 50)
    assert not needs_update(NotifyEntry({"a"}, set(), 0), {"a"}, {"b"}, False, 100, 50)


def test_token_bucket():
    b = TokenBucket(2, 10)
    assert b.try_acquire(0) and b.try_acquire(0)
    assert not b.try_acquire(0)
    assert b.next_available(0) == pytest.approx(5.0)
    assert b.try_acquire(5.1)
    with pytest.raises(ValueError):
        TokenBucket(0, 10)


@pytest.mark.parametrize("text", ["[]", "null", '{"silences": {"s1": 1}}', '{"nflog": [1]}'])
def test_state_of_the_wrong_shape_is_ignored(tmp_path, text, caplog):
    path = tmp_path / "router.json"
    path.write_text(text, encoding="utf-8")
    router, _ = _router()
    router.load_state(str(path))
    assert router.silences() == []
    assert router.reload_silences(str(path)) == 0
    assert "Ignoring router state" in caplog.text


def test_bad_entries_are_skipped_individually(tmp_path):
    path = tmp_path / "router.json"
    good = {"id": "s1", "matchers": ['alertname="X"'], "starts_at": 0, "ends_at": 100}
    path.write_text(
        json.dumps({"silences": [good, None, {"id": "s2"}], "nflog": {"k": {"firing": 3}, "k2": None}}),
        encoding="utf-8",
    )
    router, _ = _router()
    router.load_state(str(path))
    assert [s.id for s in router.silences()] == ["s1"]


def test_reload_silences_merges_by_id(tmp_path):
    path = str(tmp_path / "router.json")
    live, rcv = _router()
    live.receive([_alert(instance="a")], now=0)

    # another process adds a silence and writes the file
    cli, _ = _router()
    sid = cli.add_silence(_m('alertname="HighCPU"'), starts_at=0, ends_at=10_000)
    cli.save_state(path)

    assert live.reload_silences(path) == 1
    assert live.reload_silences(path) == 0
    assert live.flush(30) == []
    assert rcv.sent == []

    cli.expire_silence(sid, now=40)
    cli.save_state(path)
    assert live.reload_silences(path) == 1
    [n] = live.flush(330)
    assert n.status == "firing"


def test_iso_clamps_out_of_range_timestamps():
    assert iso(None) == "0001-01-01T00:00:00Z"
    assert iso(float("inf")).startswith("9999-12-31T23:59:59")
    assert iso(1e20).startswith("9999-12-31")
    assert iso(0).startswith("1970-01-01")
    router, _ = _router()
    assert router.add_silence(_m('alertname="X"'), starts_at=0, ends_at=1e18)
