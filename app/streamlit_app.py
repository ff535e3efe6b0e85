import sys
from pathlib import Path

# Add project root to sys.path for robust imports
root_path = Path(__file__).parent.parent.absolute()
if str(root_path) not in sys.path:
    sys.path.insert(0, str(root_path))

import os
import time
from datetime import datetime
from typing import Optional, Tuple

import pandas as pd
import streamlit as st

from alerts import ConfigError, Engine, ExpressionError, load_alert_state
from alerts.engine import STATE_PATH
from alerts.expr import DEFAULT_LOOKBACK
from app.providers.store.labels import METRIC_NAME, fingerprint
from app.providers.store.sqlite_store import SQLiteStore
from jobs.config import load_config


def get_db_path() -> str:
    env_path = os.getenv("BEACON_DB_PATH")
    if env_path:
        return env_path
    return "beacon.db"


def get_state_path() -> str:
    return os.getenv("BEACON_STATE_PATH") or STATE_PATH


def get_settings() -> Tuple[str, str, float, Optional[str]]:
    """db path, alert state path and lookback from the config file; env and defaults when it doesn't load."""
    try:
        cfg = load_config()
    except ConfigError as e:
        return get_db_path(), get_state_path(), DEFAULT_LOOKBACK, str(e)
    return cfg.db_path, cfg.state_path, cfg.global_.lookback_delta, None


def target_health(engine: Engine, now: float) -> pd.DataFrame:
    """One row per target from the synthetic `up` and scrape_* series."""
    rows = {}
    for name, col in (("up", "up"), ("scrape_duration_seconds", "duration_s"), ("scrape_samples_scraped", "samples")):
        try:
            vec = engine.instant_query(name, now)
        except ExpressionError:
            continue
        for s in vec:
            key = (s.labels.get("job", ""), s.labels.get("instance", ""))
            rows.setdefault(key, {"job": key[0], "instance": key[1]})[col] = s.value
    df = pd.DataFrame(list(rows.values()), columns=["job", "instance", "up", "duration_s", "samples"])
    return df.sort_values(["job", "instance"]).reset_index(drop=True)


def query_frame(engine: Engine, expr: str, start: float, end: float, step: float) -> pd.DataFrame:
    """Range query as a wide frame: datetime index, one column per series."""
    cols = {}
    for labels, series in engine.range_query(expr, start, end, step):
        name = fingerprint(labels) if labels else expr
        s = series.copy()
        s.index = pd.to_datetime(s.index, unit="s", utc=True)
        cols[name] = s
    if not cols:
        return pd.DataFrame()
    return pd.DataFrame(cols).sort_index()


def alerts_frame(path: str) -> pd.DataFrame:
    items = load_alert_state(path)
    if not items:
        return pd.DataFrame()
    df = pd.DataFrame(
        {
            "state": [a["state"] for a in items],
            "alertname": [a["labels"].get("alertname", "") for a in items],
            "severity": [a["labels"].get("severity", "") for a in items],
            "labels": [
                ", ".join(f"{k}={v}" for k, v in sorted(a["labels"].items()) if k not in ("alertname", METRIC_NAME))
                for a in items
            ],
            "value": [a.get("value") for a in items],
            "since": [datetime.fromtimestamp(a.get("fired_at") or a["active_at"]) for a in items],
            "summary": [a.get("annotations", {}).get("summary", "") for a in items],
            "rule": [a["rule"] for a in items],
        }
    )
    order = {"firing": 0, "pending": 1, "resolved": 2}
    return df.sort_values(by="state", key=lambda s: s.map(order)).reset_index(drop=True)


def main() -> None:
    st.set_page_config(page_title="Beacon", layout="wide")
    st.title("Beacon · 监控状态")

    db_path, state_path, lookback, config_error = get_settings()
    if config_error:
        st.caption(f"config not loaded ({config_error}), using defaults")
    if not Path(db_path).exists():
        st.warning(f"找不到数据库 {db_path}，先运行 `python -m jobs.scrape`。")
        return

    store = SQLiteStore(db_path=db_path)
    engine = Engine(store, lookback)
    now = time.time()

    stats = store.stats()
    c1, c2, c3 = st.columns(3)
    c1.metric("Series", stats["series"])
    c2.metric("Samples", stats["samples"])
    active = load_alert_state(state_path)
    c3.metric("Firing alerts", sum(1 for a in active if a["state"] == "firing"))

    tab1, tab2, tab3 = st.tabs(["🎯 Targets", "📈 Query", "🚨 Alerts"])

    with tab1:
        df = target_health(engine, now)
        if df.empty:
            st.info("No scrape results in the lookback window.")
        else:
            df["up"] = df["up"].map(lambda v: "✅ up" if v == 1 else "❌ down")
            st.dataframe(df, use_container_width=True)

    with tab2:
        expr = st.text_input("Expression", value="rate(scrape_samples_scraped[5m])")
        window_min = st.slider("Range (minutes)", 5, 24 * 60, 60)
        step = max(15.0, window_min * 60 / 240)
        if expr:
            try:
                frame = query_frame(engine, expr, now - window_min * 60, now, step)
            except ExpressionError as e:
                st.error(str(e))
            else:
                if frame.empty:
                    st.info("Empty result.")
                else:
                    st.line_chart(frame, height=320)

    with tab3:
        df_alerts = alerts_frame(state_path)
        if df_alerts.empty:
            st.success("No active alerts.")
        else:
            st.dataframe(df_alerts, use_container_width=True)


if __name__ == "__main__":
    main()
