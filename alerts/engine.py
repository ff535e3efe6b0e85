from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from app.providers.store.labels import METRIC_NAME, fingerprint, normalize, without_name
from app.providers.store.sqlite_store import SampleRow, SQLiteStore, StoreError

from .expr import Engine, ExpressionError, Scalar, DEFAULT_LOOKBACK
from .router import Alert
from .rules import AlertingRule, RecordingRule, Rule, RuleGroup, render_template

STATE_PATH = "data/alert_state.json"

STATE_PENDING = "pending"
STATE_FIRING = "firing"
STATE_RESOLVED = "resolved"

# resolved alerts keep being re-sent for this long
RESOLVED_RETENTION = 15 * 60

logger = logging.getLogger(__name__)


def _known_state(state: str) -> str:
    if state not in (STATE_PENDING, STATE_FIRING, STATE_RESOLVED):
        raise ValueError(f"unknown alert state {state!r}")
    return state


def _ensure_parent(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


@dataclass
class ActiveAlert:
    labels: Dict[str, str]
    annotations: Dict[str, str]
    state: str
    value: float
    active_at: float
    last_seen: float
    fired_at: Optional[float] = None
    resolved_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "labels": self.labels,
            "annotations": self.annotations,
            "state": self.state,
            "value": self.value,
            "active_at": self.active_at,
            "last_seen": self.last_seen,
            "fired_at": self.fired_at,
            "resolved_at": self.resolved_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ActiveAlert":
        return cls(
            labels=dict(d["labels"]),
            annotations=dict(d.get("annotations", {})),
            state=_known_state(d["state"]),
            value=float(d.get("value", 0.0)),
            active_at=float(d["active_at"]),
            last_seen=float(d.get("last_seen", d["active_at"])),
            fired_at=d.get("fired_at"),
            resolved_at=d.get("resolved_at"),
        )


@dataclass
class RuleHealth:
    health: str = "unknown"  # ok | err | unknown
    last_error: Optional[str] = None
    last_evaluation: Optional[float] = None
    evaluation_duration: float = 0.0


@dataclass
class _GroupState:
    group: RuleGroup
    rules: List[Tuple[str, Rule]]
    next_eval: Optional[float] = None
    # fingerprint -> labels of series this group wrote on its last run
    written: Dict[str, Dict[str, str]] = field(default_factory=dict)


class RuleEvaluator:
    """
    Evaluates rule groups against the store and runs the alert state machine:

        inactive -> pending -> firing -> resolved

    Pending alerts that disappear are dropped silently; firing alerts that
    disappear become resolved and keep being reported for RESOLVED_RETENTION.
    """

    def __init__(
        self,
        groups: Sequence[RuleGroup],
        store: SQLiteStore,
        engine: Optional[Engine] = None,
        external_labels: Optional[Dict[str, str]] = None,
        state_path: Optional[str] = None,
        lookback: float = DEFAULT_LOOKBACK,
        generator_url: str = "",
    ) -> None:
        self.store = store
        self.engine = engine or Engine(store, lookback)
        self.external_labels = dict(external_labels or {})
        self.state_path = state_path
        self.generator_url = generator_url

        self._groups: Dict[str, _GroupState] = {}
        self._active: Dict[str, Dict[str, ActiveAlert]] = {}
        self._health: Dict[str, RuleHealth] = {}
        for g in groups:
            keyed: List[Tuple[str, Rule]] = []
            seen: Dict[str, int] = {}
            for rule in g.rules:
                n = seen.get(rule.name, 0)
                seen[rule.name] = n + 1
                key = f"{g.name}/{rule.name}" + (f"#{n}" if n else "")
                keyed.append((key, rule))
                self._health[key] = RuleHealth()
                if isinstance(rule, AlertingRule):
                    self._active[key] = {}
            self._groups[g.name] = _GroupState(group=g, rules=keyed)

    # ── scheduling ────────────────────────────────────────────────────────

    def due_groups(self, now: float) -> List[RuleGroup]:
        return [gs.group for gs in self._groups.values() if gs.next_eval is None or gs.next_eval <= now]

    def evaluate_due(self, now: Optional[float] = None) -> List[Alert]:
        now = time.time() if now is None else now
        out: List[Alert] = []
        for g in self.due_groups(now):
            out.extend(self.evaluate_group(g, now))
        return out

    def evaluate_all(self, now: Optional[float] = None) -> List[Alert]:
        now = time.time() if now is None else now
        out: List[Alert] = []
        for gs in self._groups.values():
            out.extend(self.evaluate_group(gs.group, now))
        return out

    # ── evaluation ────────────────────────────────────────────────────────

    def evaluate_group(self, group: RuleGroup, now: float) -> List[Alert]:
        """Evaluate rules in order; returns firing and recently resolved alerts."""
        gs = self._groups[group.name]
        records: Dict[str, Dict[str, str]] = {}
        alerts: List[Alert] = []

        for key, rule in gs.rules:
            health = self._health[key]
            started = time.monotonic()
            try:
                result = self.engine.instant_query(rule.expr, now)
                if isinstance(rule, RecordingRule):
                    records.update(self._record(rule, result, now))
                else:
                    self._update_alerts(key, rule, result, now)
            except (ExpressionError, StoreError) as e:
                health.health = "err"
                health.last_error = str(e)
                logger.warning("Rule %s failed: %s", key, e)
            except Exception as e:
                health.health = "err"
                health.last_error = f"{e.__class__.__name__}: {e}"
                logger.exception("Rule %s failed unexpectedly", key)
            else:
                health.health = "ok"
                health.last_error = None
            health.last_evaluation = now
            health.evaluation_duration = time.monotonic() - started

            if isinstance(rule, AlertingRule):
                alerts.extend(self._outgoing(rule, self._active[key].values(), group.interval, now))

        records.update(self._alerts_series(gs, now))
        self._write_series(gs, records, now)

        if gs.next_eval is None or gs.next_eval > now:
            gs.next_eval = now + group.interval
        else:
            missed = int((now - gs.next_eval) // group.interval)
            if missed:
                logger.warning("Group %s missed %d evaluations", group.name, missed)
            gs.next_eval += (missed + 1) * group.interval
        return alerts

    def _record(self, rule: RecordingRule, result, now: float) -> Dict[str, Dict[str, str]]:
        samples = [(dict(), result.value)] if isinstance(result, Scalar) else [(without_name(s.labels), s.value) for s in result]
        out: Dict[str, Tuple[Dict[str, str], float]] = {}
        for labels, value in samples:
            labels.update(rule.labels)
            labels[METRIC_NAME] = rule.name
            labels = normalize(labels)
            fp = fingerprint(labels)
            if fp in out:
                raise ExpressionError(f"vector contains metrics with the same labelset after applying rule labels: {fp}")
            out[fp] = (labels, value)
        self.store.append(SampleRow(labels=lb, ts=now, value=v) for lb, v in out.values())
        return {fp: lb for fp, (lb, _) in out.items()}

    def _update_alerts(self, key: str, rule: AlertingRule, result, now: float) -> None:
        active = self._active[key]

        # build everything first so a bad result leaves state untouched
        incoming: Dict[str, Tuple[Dict[str, str], Dict[str, str], float]] = {}
        for sample in result:
            base = without_name(sample.labels)
            labels = dict(base)
            for k, v in rule.labels.items():
                labels[k] = render_template(v, base, sample.value)
            labels["alertname"] = rule.name
            for k, v in self.external_labels.items():
                labels.setdefault(k, v)
            labels = normalize(labels)
            annotations = {k: render_template(v, base, sample.value) for k, v in rule.annotations.items()}
            fp = fingerprint(labels)
            if fp in incoming:
                raise ExpressionError(f"vector contains metrics with the same labelset after applying alert labels: {fp}")
            incoming[fp] = (labels, annotations, sample.value)

        for fp, (labels, annotations, value) in incoming.items():
            alert = active.get(fp)
            if alert is not None and alert.state != STATE_RESOLVED:
                alert.value = value
                alert.annotations = annotations
                alert.last_seen = now
                continue
            active[fp] = ActiveAlert(
                labels=labels,
                annotations=annotations,
                state=STATE_PENDING,
                value=value,
                active_at=now,
                last_seen=now,
            )
            logger.debug("Alert %s pending", fp)

        for fp in list(active):
            alert = active[fp]
            if fp not in incoming:
                if alert.state == STATE_PENDING:
                    del active[fp]
                elif alert.state == STATE_FIRING:
                    if rule.keep_firing_for and now - alert.last_seen < rule.keep_firing_for:
                        continue
                    alert.state = STATE_RESOLVED
                    alert.resolved_at = now
                    logger.info("Alert %s resolved", fp)
                elif now - alert.resolved_at >= RESOLVED_RETENTION:
                    del active[fp]
                continue
            if alert.state == STATE_PENDING and now - alert.active_at >= rule.for_:
                alert.state = STATE_FIRING
                alert.fired_at = now
                logger.info("Alert %s firing (value=%g)", fp, alert.value)

    def _outgoing(self, rule: AlertingRule, active: Iterable[ActiveAlert], interval: float, now: float) -> List[Alert]:
        out = []
        for a in active:
            if a.state == STATE_PENDING:
                continue
            if a.state == STATE_FIRING:
                # valid until a few missed evaluations later
                ends_at = now + 4 * max(interval, 60.0)
            else:
                ends_at = a.resolved_at
            out.append(
                Alert(
                    labels=dict(a.labels),
                    annotations=dict(a.annotations),
                    starts_at=a.active_at,
                    ends_at=ends_at,
                    updated_at=now,
                    generator=self.generator_url,
                    value=a.value,
                )
            )
        return out

    def _alerts_series(self, gs: _GroupState, now: float) -> Dict[str, Dict[str, str]]:
        rows = {}
        for key, rule in gs.rules:
            if not isinstance(rule, AlertingRule):
                continue
            for a in self._active[key].values():
                if a.state == STATE_RESOLVED:
                    continue
                labels = {**a.labels, METRIC_NAME: "ALERTS", "alertstate": a.state}
                rows[fingerprint(labels)] = labels
        return rows

    def _write_series(self, gs: _GroupState, current: Dict[str, Dict[str, str]], now: float) -> None:
        """Write ALERTS samples and stale-mark group output that disappeared."""
        alerts_rows = [SampleRow(labels=lb, ts=now, value=1.0) for lb in current.values() if lb.get(METRIC_NAME) == "ALERTS"]
        try:
            if alerts_rows:
                self.store.append(alerts_rows)
            gone = [lb for fp, lb in gs.written.items() if fp not in current]
            if gone:
                self.store.mark_stale(gone, now)
        except StoreError as e:
            logger.warning("Group %s: failed to write series: %s", gs.group.name, e)
        gs.written = current

    # ── introspection ─────────────────────────────────────────────────────

    def active_alerts(self) -> List[ActiveAlert]:
        return [a for alerts in self._active.values() for a in alerts.values()]

    def rule_health(self) -> Dict[str, RuleHealth]:
        return dict(self._health)

    # ── persistence ───────────────────────────────────────────────────────

    def save_state(self, path: Optional[str] = None) -> None:
        path = path or self.state_path or STATE_PATH
        _ensure_parent(path)
        st = {key: [a.to_dict() for a in alerts.values()] for key, alerts in self._active.items() if alerts}
        tmp = f"{path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({"version": 1, "alerts": st}, f, ensure_ascii=False, indent=2)
        os.replace(tmp, path)

    def load_state(self, path: Optional[str] = None) -> int:
        """Restore pending/firing alerts so `for` timers survive restarts."""
        path = path or self.state_path or STATE_PATH
        try:
            with open(path, "r", encoding="utf-8") as f:
                st = json.load(f)
        except FileNotFoundError:
            return 0
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable alert state %s: %s", path, e)
            return 0
        alerts = st.get("alerts") if isinstance(st, dict) else None
        if not isinstance(alerts, dict):
            logger.warning("Ignoring alert state %s: expected an object with an \"alerts\" mapping", path)
            return 0

        restored = 0
        for key, items in alerts.items():
            if key not in self._active:
                logger.info("Dropping state for unknown rule %s", key)
                continue
            if not isinstance(items, list):
                logger.warning("Skipping bad alert state for %s: expected a list", key)
                continue
            for raw in items:
                try:
                    a = ActiveAlert.from_dict(raw)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping bad alert state entry for %s: %s", key, e)
                    continue
                self._active[key][fingerprint(a.labels)] = a
                restored += 1
        logger.info("Restored %d alerts from %s", restored, path)
        return restored


def load_alert_state(path: str = STATE_PATH) -> List[dict]:
    """Flat list of persisted alerts with their rule key, for read-only views."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            st = json.load(f)
    except FileNotFoundError:
        return []
    except (OSError, json.JSONDecodeError):
        return []
    alerts = st.get("alerts") if isinstance(st, dict) else None
    if not isinstance(alerts, dict):
        return []
    out = []
    for key, items in alerts.items():
        if not isinstance(items, list):
            continue
        out.extend({"rule": key, **raw} for raw in items if isinstance(raw, dict) and "labels" in raw and "state" in raw)
    return out
