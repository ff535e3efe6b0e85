from __future__ import annotations

import json
import logging
import math
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import pandas as pd

from .labels import METRIC_NAME, Matcher, fingerprint, matches_all, normalize

logger = logging.getLogger(__name__)

# SQLite caps bound parameters per statement
_CHUNK = 500


class StoreError(RuntimeError):
    pass


@dataclass
class SampleRow:
    labels: Dict[str, str]
    ts: float  # unix seconds
    value: float
    stale: bool = False


@dataclass
class AppendResult:
    appended: int = 0
    duplicates: int = 0
    out_of_order: int = 0

    def __iadd__(self, other: "AppendResult") -> "AppendResult":
        self.appended += other.appended
        self.duplicates += other.duplicates
        self.out_of_order += other.out_of_order
        return self


@dataclass
class SeriesData:
    labels: Dict[str, str]
    samples: pd.Series  # value indexed by unix seconds
    stale_at: List[float] = field(default_factory=list)


class SQLiteStore:
    """
    Append-only time-series store.

    Series are keyed by their fingerprint (metric name + sorted label set).
    Samples for a series must arrive in timestamp order; older samples are
    rejected as out-of-order and same-timestamp samples are ignored.
    """

    def __init__(self, db_path: str = "beacon.db") -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self._series_ids: Dict[str, int] = {}
        self._latest: Dict[int, Optional[float]] = {}

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise StoreError(f"sqlite error on {self.db_path}: {e}") from e
        finally:
            conn.close()

    def init_db(self) -> None:
        create_sql = """
        CREATE TABLE IF NOT EXISTS series (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            fingerprint TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            labels_json TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_series_name ON series (name);
        CREATE TABLE IF NOT EXISTS samples (
            series_id INTEGER NOT NULL,
            ts REAL NOT NULL,
            value REAL,
            stale INTEGER NOT NULL DEFAULT 0,
            UNIQUE (series_id, ts)
        );
        CREATE INDEX IF NOT EXISTS idx_samples_ts ON samples (ts);
        """
        with self._connect() as conn:
            conn.executescript(create_sql)

    # ── writes ────────────────────────────────────────────────────────────

    def _series_id(self, conn: sqlite3.Connection, labels: Dict[str, str]) -> int:
        fp = fingerprint(labels)
        sid = self._series_ids.get(fp)
        if sid is not None:
            return sid
        row = conn.execute("SELECT id FROM series WHERE fingerprint = ?", (fp,)).fetchone()
        if row is None:
            cur = conn.execute(
                "INSERT INTO series (fingerprint, name, labels_json) VALUES (?, ?, ?)",
                (fp, labels.get(METRIC_NAME, ""), json.dumps(labels, sort_keys=True)),
            )
            sid = cur.lastrowid
            self._latest[sid] = None
        else:
            sid = row[0]
        self._series_ids[fp] = sid
        return sid

    def _latest_ts(self, conn: sqlite3.Connection, sid: int) -> Optional[float]:
        if sid not in self._latest:
            row = conn.execute("SELECT MAX(ts) FROM samples WHERE series_id = ?", (sid,)).fetchone()
            self._latest[sid] = row[0] if row else None
        return self._latest[sid]

    def append(self, rows: Iterable[SampleRow]) -> AppendResult:
        result = AppendResult()
        prepared = [(normalize(r.labels), r) for r in rows]
        for labels, _ in prepared:
            if not labels.get(METRIC_NAME):
                raise StoreError(f"sample without metric name: {labels}")
        sql = "INSERT OR IGNORE INTO samples (series_id, ts, value, stale) VALUES (?, ?, ?, ?)"
        with self._lock, self._connect() as conn:
            batch: List[Tuple[int, float, Optional[float], int]] = []
            for labels, r in prepared:
                sid = self._series_id(conn, labels)
                latest = self._latest_ts(conn, sid)
                if latest is not None:
                    if r.ts < latest:
                        result.out_of_order += 1
                        continue
                    if r.ts == latest:
                        result.duplicates += 1
                        continue
                # SQLite has no NaN; NULL with stale=0 reads back as NaN
                value = None if r.stale or math.isnan(r.value) else float(r.value)
                batch.append((sid, float(r.ts), value, 1 if r.stale else 0))
                self._latest[sid] = r.ts
            if batch:
                conn.executemany(sql, batch)
            result.appended = len(batch)
        if result.out_of_order:
            logger.debug("Rejected %d out-of-order samples", result.out_of_order)
        return result

    def mark_stale(self, labels_list: Iterable[Dict[str, str]], ts: float) -> AppendResult:
        return self.append(SampleRow(labels=dict(lb), ts=ts, value=float("nan"), stale=True) for lb in labels_list)

    def delete_before(self, ts: float) -> int:
        """Retention: drop samples at or before ts and series left empty."""
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM samples WHERE ts <= ?", (ts,))
            deleted = cur.rowcount
            conn.execute("DELETE FROM series WHERE id NOT IN (SELECT DISTINCT series_id FROM samples)")
            self._series_ids.clear()
            self._latest.clear()
        logger.info("Retention removed %d samples older than %.0f", deleted, ts)
        return deleted

    # ── reads ─────────────────────────────────────────────────────────────

    def _matching_series(self, conn: sqlite3.Connection, matchers: Sequence[Matcher]) -> Dict[int, Dict[str, str]]:
        names = [m.value for m in matchers if m.name == METRIC_NAME and m.op == "=" and m.value]
        if names:
            rows = conn.execute("SELECT id, labels_json FROM series WHERE name = ?", (names[0],)).fetchall()
        else:
            rows = conn.execute("SELECT id, labels_json FROM series").fetchall()
        out: Dict[int, Dict[str, str]] = {}
        for sid, raw in rows:
            labels = json.loads(raw)
            if matches_all(matchers, labels):
                out[sid] = labels
        return out

    @staticmethod
    def _chunks(ids: List[int]) -> Iterator[List[int]]:
        for i in range(0, len(ids), _CHUNK):
            yield ids[i : i + _CHUNK]

    def select(self, matchers: Sequence[Matcher], start: float, end: float) -> List[SeriesData]:
        """Samples of every matching series with start < ts <= end."""
        with self._connect() as conn:
            series = self._matching_series(conn, matchers)
            if not series:
                return []
            frames = []
            for chunk in self._chunks(sorted(series)):
                marks = ",".join("?" * len(chunk))
                frames.append(
                    pd.read_sql_query(
                        f"SELECT series_id, ts, value, stale FROM samples "
                        f"WHERE series_id IN ({marks}) AND ts > ? AND ts <= ? ORDER BY series_id, ts",
                        conn,
                        params=[*chunk, start, end],
                    )
                )
        df = pd.concat(frames, ignore_index=True)
        out: List[SeriesData] = []
        for sid, grp in df.groupby("series_id", sort=True):
            stale_mask = grp["stale"].astype(bool)
            live = grp[~stale_mask]
            values = pd.Series(
                live["value"].astype(float).to_numpy(),
                index=live["ts"].astype(float).to_numpy(),
                dtype=float,
            )
            out.append(
                SeriesData(
                    labels=dict(series[int(sid)]),
                    samples=values,
                    stale_at=grp.loc[stale_mask, "ts"].astype(float).tolist(),
                )
            )
        return out

    def instant(self, matchers: Sequence[Matcher], ts: float, lookback: float) -> List[Tuple[Dict[str, str], float, float]]:
        """Newest sample per series in (ts - lookback, ts]; series whose newest sample is stale are skipped."""
        with self._connect() as conn:
            series = self._matching_series(conn, matchers)
            if not series:
                return []
            rows = []
            for chunk in self._chunks(sorted(series)):
                marks = ",".join("?" * len(chunk))
                rows.extend(
                    conn.execute(
                        f"""
                        SELECT s.series_id, s.ts, s.value, s.stale
                        FROM samples s
                        JOIN (
                            SELECT series_id, MAX(ts) AS mts FROM samples
                            WHERE series_id IN ({marks}) AND ts > ? AND ts <= ?
                            GROUP BY series_id
                        ) m ON s.series_id = m.series_id AND s.ts = m.mts
                        ORDER BY s.series_id
                        """,
                        [*chunk, ts - lookback, ts],
                    ).fetchall()
                )
        out = []
        for sid, sts, value, stale in rows:
            if stale:
                continue
            out.append((dict(series[sid]), float(sts), float("nan") if value is None else float(value)))
        return out

    def series(self, matchers: Sequence[Matcher]) -> List[Dict[str, str]]:
        with self._connect() as conn:
            return list(self._matching_series(conn, matchers).values())

    def label_names(self) -> List[str]:
        names = set()
        with self._connect() as conn:
            for (raw,) in conn.execute("SELECT labels_json FROM series"):
                names.update(json.loads(raw))
        return sorted(names)

    def label_values(self, name: str) -> List[str]:
        values = set()
        with self._connect() as conn:
            for (raw,) in conn.execute("SELECT labels_json FROM series"):
                v = json.loads(raw).get(name)
                if v:
                    values.add(v)
        return sorted(values)

    def stats(self) -> Dict[str, int]:
        with self._connect() as conn:
            n_series = conn.execute("SELECT COUNT(*) FROM series").fetchone()[0]
            n_samples = conn.execute("SELECT COUNT(*) FROM samples").fetchone()[0]
        return {"series": int(n_series), "samples": int(n_samples)}
