from alerts import Engine
from alerts.expr import DEFAULT_LOOKBACK
from app.providers.store.sqlite_store import SampleRow, SQLiteStore
from app.streamlit_app import get_db_path, get_settings, query_frame, target_health


def test_db_init_tmp(tmp_path):
    db_path = tmp_path / "test_beacon.db"
    store = SQLiteStore(db_path=str(db_path))
    store.init_db()
    assert db_path.exists()


def test_get_db_path_env_override(monkeypatch):
    monkeypatch.setenv("BEACON_DB_PATH", "env.db")
    assert get_db_path().endswith("env.db")


def test_dashboard_frames(tmp_path):
    store = SQLiteStore(db_path=str(tmp_path / "d.db"))
    store.init_db()
    rows = []
    for ts in (100.0, 115.0, 130.0):
        for inst, up in (("a:9100", 1.0), ("b:9100", 0.0)):
            base = {"job": "node", "instance": inst}
            rows.append(SampleRow(labels={**base, "__name__": "up"}, ts=ts, value=up))
            rows.append(SampleRow(labels={**base, "__name__": "scrape_duration_seconds"}, ts=ts, value=0.25))
    store.append(rows)
    engine = Engine(store)

    health = target_health(engine, 130.0)
    assert list(health["instance"]) == ["a:9100", "b:9100"]
    assert list(health["up"]) == [1.0, 0.0]
    assert list(health["duration_s"]) == [0.25, 0.25]

    frame = query_frame(engine, "sum(up)", 100.0, 130.0, 15.0)
    assert list(frame.columns) == ["sum(up)"]
    assert list(frame.iloc[:, 0]) == [1.0, 1.0, 1.0]
    assert str(frame.index.tz) == "UTC"


def test_settings_come_from_config(tmp_path, monkeypatch):
    for var in ("BEACON_DB_PATH", "BEACON_STATE_PATH"):
        monkeypatch.delenv(var, raising=False)
    cfg = tmp_path / "beacon.yaml"
    cfg.write_text(
        "global:\n"
        "  lookback_delta: 2m\n"
        f"db_path: {tmp_path / 'metrics.db'}\n"
        f"state_path: {tmp_path / 'alerts.json'}\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("BEACON_CONFIG", str(cfg))

    db_path, state_path, lookback, error = get_settings()
    assert db_path == str(tmp_path / "metrics.db")
    assert state_path == str(tmp_path / "alerts.json")
    assert lookback == 120.0
    assert error is None


def test_settings_fall_back_without_config(tmp_path, monkeypatch):
    monkeypatch.setenv("BEACON_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("BEACON_DB_PATH", "env.db")
    monkeypatch.delenv("BEACON_STATE_PATH", raising=False)

    db_path, _, lookback, error = get_settings()
    assert db_path == "env.db"
    assert lookback == DEFAULT_LOOKBACK
    assert "not found" in error
