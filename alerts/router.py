"""
Alert routing: dedup by fingerprint, route-tree matching, aggregation
groups with group_wait/group_interval/repeat_interval, silences,
inhibition and per-receiver rate limiting.
"""

from __future__ import annotations

import json
import logging
import math
import os
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from app.providers.store.labels import Matcher, fingerprint, matches_all, parse_matcher

logger = logging.getLogger(__name__)

DEFAULT_GROUP_WAIT = 30.0
DEFAULT_GROUP_INTERVAL = 300.0
DEFAULT_REPEAT_INTERVAL = 4 * 3600.0
DEFAULT_RESOLVE_TIMEOUT = 300.0
RETRY_DELAY = 10.0
GROUP_BY_ALL = "..."


# 9999-12-31T23:59:59Z, the last second datetime can represent
_MAX_TS = 253402300799.0


def iso(ts: Optional[float]) -> str:
    if ts is None or math.isnan(ts):
        return "0001-01-01T00:00:00Z"
    return datetime.fromtimestamp(min(max(ts, 0.0), _MAX_TS), tz=timezone.utc).isoformat()


@dataclass
class Alert:
    labels: Dict[str, str]
    annotations: Dict[str, str] = field(default_factory=dict)
    starts_at: float = 0.0
    ends_at: Optional[float] = None
    updated_at: float = 0.0
    generator: str = ""
    value: float = 0.0

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.labels)

    @property
    def name(self) -> str:
        return self.labels.get("alertname", "")

    def resolved(self, now: float) -> bool:
        return self.ends_at is not None and self.ends_at <= now

    def status(self, now: float) -> str:
        return "resolved" if self.resolved(now) else "firing"

    def to_payload(self, now: float) -> Dict[str, Any]:
        return {
            "status": self.status(now),
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "startsAt": iso(self.starts_at),
            "endsAt": iso(self.ends_at) if self.resolved(now) else iso(None),
            "generatorURL": self.generator,
            "fingerprint": self.fingerprint,
        }


@dataclass
class Notification:
    receiver: str
    group_key: str
    status: str
    alerts: List[Alert]
    group_labels: Dict[str, str]
    common_labels: Dict[str, str]
    common_annotations: Dict[str, str]
    timestamp: float = 0.0
    external_url: str = ""

    def firing(self) -> List[Alert]:
        return [a for a in self.alerts if not a.resolved(self.timestamp)]

    def resolved(self) -> List[Alert]:
        return [a for a in self.alerts if a.resolved(self.timestamp)]

    def to_payload(self) -> Dict[str, Any]:
        """Alertmanager webhook (version 4) body."""
        return {
            "version": "4",
            "groupKey": self.group_key,
            "status": self.status,
            "receiver": self.receiver,
            "groupLabels": dict(self.group_labels),
            "commonLabels": dict(self.common_labels),
            "commonAnnotations": dict(self.common_annotations),
            "externalURL": self.external_url,
            "alerts": [a.to_payload(self.timestamp) for a in self.alerts],
        }


class Notifier(Protocol):
    send_resolved: bool

    def send(self, notification: Notification) -> bool: ...


# ── route tree ───────────────────────────────────────────────────────────────

@dataclass
class Route:
    receiver: Optional[str] = None
    matchers: List[Matcher] = field(default_factory=list)
    group_by: Optional[List[str]] = None
    group_wait: Optional[float] = None
    group_interval: Optional[float] = None
    repeat_interval: Optional[float] = None
    continue_: bool = False
    routes: List["Route"] = field(default_factory=list)
    id: str = ""

    @property
    def group_by_all(self) -> bool:
        return bool(self.group_by) and GROUP_BY_ALL in self.group_by

    def match(self, labels: Mapping[str, str]) -> List["Route"]:
        """Depth-first: first matching child wins unless it has continue set."""
        if not matches_all(self.matchers, labels):
            return []
        found: List[Route] = []
        for child in self.routes:
            hit = child.match(labels)
            if hit:
                found.extend(hit)
                if not child.continue_:
                    break
        return found or [self]

    def group_labels(self, labels: Mapping[str, str]) -> Dict[str, str]:
        if self.group_by_all:
            return dict(labels)
        return {k: labels[k] for k in (self.group_by or []) if k in labels}

    def receivers(self) -> Set[str]:
        out = {self.receiver} if self.receiver else set()
        for child in self.routes:
            out |= child.receivers()
        return out


def finalize_route(root: Route, parent: Optional[Route] = None, path: str = "0") -> Route:
    """Fill unset fields from the parent (or defaults at the root) and assign ids."""
    if parent is None:
        if not root.receiver:
            raise ValueError("root route must have a receiver")
        if root.matchers:
            raise ValueError("root route must not have matchers")
        parent = Route(
            receiver=root.receiver,
            group_by=[],
            group_wait=DEFAULT_GROUP_WAIT,
            group_interval=DEFAULT_GROUP_INTERVAL,
            repeat_interval=DEFAULT_REPEAT_INTERVAL,
        )
    route = replace(
        root,
        receiver=root.receiver or parent.receiver,
        group_by=list(root.group_by) if root.group_by is not None else list(parent.group_by),
        group_wait=root.group_wait if root.group_wait is not None else parent.group_wait,
        group_interval=root.group_interval if root.group_interval is not None else parent.group_interval,
        repeat_interval=root.repeat_interval if root.repeat_interval is not None else parent.repeat_interval,
        id=path,
    )
    route.routes = [finalize_route(child, route, f"{path}/{i}") for i, child in enumerate(root.routes)]
    return route


# ── silences & inhibition ────────────────────────────────────────────────────

@dataclass
class Silence:
    id: str
    matchers: List[Matcher]
    starts_at: float
    ends_at: float
    created_by: str = ""
    comment: str = ""

    def active(self, now: float) -> bool:
        return self.starts_at <= now < self.ends_at

    def mutes(self, labels: Mapping[str, str], now: float) -> bool:
        return self.active(now) and matches_all(self.matchers, labels)


@dataclass
class InhibitRule:
    source_matchers: List[Matcher]
    target_matchers: List[Matcher]
    equal: List[str] = field(default_factory=list)


# ── rate limiting ────────────────────────────────────────────────────────────

class TokenBucket:
    """max_notifications per `per` seconds, refilled continuously."""

    def __init__(self, max_notifications: int, per: float) -> None:
        if max_notifications < 1 or per <= 0:
            raise ValueError("rate limit needs max_notifications >= 1 and per > 0")
        self.capacity = float(max_notifications)
        self.rate = max_notifications / per
        self.tokens = self.capacity
        self.updated: Optional[float] = None

    def _refill(self, now: float) -> None:
        if self.updated is not None and now > self.updated:
            self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
        if self.updated is None or now > self.updated:
            self.updated = now

    def try_acquire(self, now: float) -> bool:
        self._refill(now)
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False

    def next_available(self, now: float) -> float:
        self._refill(now)
        if self.tokens >= 1.0:
            return now
        return now + (1.0 - self.tokens) / self.rate


# ── aggregation groups ───────────────────────────────────────────────────────

@dataclass
class AggregationGroup:
    key: str
    route: Route
    labels: Dict[str, str]
    created_at: float
    next_flush: float
    alerts: Dict[str, Alert] = field(default_factory=dict)
    flushed: bool = False


@dataclass
class NotifyEntry:
    firing: Set[str]
    resolved: Set[str]
    sent_at: float


def needs_update(entry: Optional[NotifyEntry], firing: Set[str], resolved: Set[str], send_resolved: bool, repeat_interval: float, now: float) -> bool:
    if entry is None:
        # never notify a group that only ever had resolved alerts
        return len(firing) > 0
    if not firing.issubset(entry.firing):
        return True
    if not firing:
        # everything resolved: clear what the receiver last saw as firing
        return len(entry.firing) > 0
    if send_resolved and not resolved.issubset(entry.resolved):
        return True
    return entry.sent_at <= now - repeat_interval


def _common(maps: Sequence[Mapping[str, str]]) -> Dict[str, str]:
    if not maps:
        return {}
    out = dict(maps[0])
    for m in maps[1:]:
        out = {k: v for k, v in out.items() if m.get(k) == v}
    return out


class AlertRouter:
    def __init__(
        self,
        route: Route,
        receivers: Mapping[str, Sequence[Notifier]],
        inhibit_rules: Sequence[InhibitRule] = (),
        rate_limits: Optional[Mapping[str, TokenBucket]] = None,
        resolve_timeout: float = DEFAULT_RESOLVE_TIMEOUT,
        clock=time.time,
        external_url: str = "",
    ) -> None:
        self.route = route if route.id else finalize_route(route)
        missing = self.route.receivers() - set(receivers)
        if missing:
            raise ValueError(f"route references unknown receivers: {sorted(missing)}")
        self.receivers = {k: list(v) for k, v in receivers.items()}
        self.inhibit_rules = list(inhibit_rules)
        self.rate_limits = dict(rate_limits or {})
        self.resolve_timeout = resolve_timeout
        self.external_url = external_url
        self._clock = clock

        self._alerts: Dict[str, Alert] = {}
        self._groups: Dict[str, AggregationGroup] = {}
        self._silences: Dict[str, Silence] = {}
        self._nflog: Dict[str, NotifyEntry] = {}
        self._lock = threading.RLock()

    # ── intake ──

    def receive(self, alerts: Sequence[Alert], now: Optional[float] = None) -> int:
        """Merge alerts by fingerprint and place them in their aggregation groups."""
        now = self._clock() if now is None else now
        with self._lock:
            for incoming in alerts:
                alert = replace(incoming, labels=dict(incoming.labels), annotations=dict(incoming.annotations), updated_at=now)
                if alert.ends_at is None:
                    alert.ends_at = now + self.resolve_timeout
                fp = alert.fingerprint
                existing = self._alerts.get(fp)
                if existing is not None and not (existing.resolved(now) and alert.starts_at > existing.ends_at):
                    alert.starts_at = min(existing.starts_at, alert.starts_at)
                self._alerts[fp] = alert
                for route in self.route.match(alert.labels):
                    self._insert(route, alert, now)
        return len(alerts)

    def _insert(self, route: Route, alert: Alert, now: float) -> None:
        glabels = route.group_labels(alert.labels)
        key = f"{route.id}:{fingerprint(glabels)}"
        group = self._groups.get(key)
        if group is None:
            next_flush = now + route.group_wait
            # alerts that started long ago skip the initial wait
            if alert.starts_at + route.group_wait < now:
                next_flush = now
            group = AggregationGroup(key=key, route=route, labels=glabels, created_at=now, next_flush=next_flush)
            self._groups[key] = group
            logger.debug("New aggregation group %s", key)
        group.alerts[alert.fingerprint] = alert

    # ── muting ──

    def add_silence(
        self,
        matchers: Sequence[Matcher],
        starts_at: float,
        ends_at: float,
        created_by: str = "",
        comment: str = "",
    ) -> str:
        if not matchers:
            raise ValueError("silence needs at least one matcher")
        if ends_at <= starts_at:
            raise ValueError("silence must end after it starts")
        sid = uuid.uuid4().hex
        with self._lock:
            self._silences[sid] = Silence(sid, list(matchers), starts_at, ends_at, created_by, comment)
        logger.info("Silence %s added by %s until %s", sid, created_by or "unknown", iso(ends_at))
        return sid

    def expire_silence(self, silence_id: str, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        with self._lock:
            s = self._silences.get(silence_id)
            if s is None:
                return False
            s.ends_at = min(s.ends_at, now)
            if s.starts_at > s.ends_at:
                s.starts_at = s.ends_at
        return True

    def silences(self) -> List[Silence]:
        return list(self._silences.values())

    def silenced(self, alert: Alert, now: float) -> bool:
        return any(s.mutes(alert.labels, now) for s in self._silences.values())

    def inhibited(self, alert: Alert, now: float) -> bool:
        for rule in self.inhibit_rules:
            if not matches_all(rule.target_matchers, alert.labels):
                continue
            for src in self._alerts.values():
                if src.fingerprint == alert.fingerprint or src.resolved(now):
                    continue
                if not matches_all(rule.source_matchers, src.labels):
                    continue
                if all(src.labels.get(n, "") == alert.labels.get(n, "") for n in rule.equal):
                    return True
        return False

    def muted(self, alert: Alert, now: float) -> bool:
        return self.silenced(alert, now) or self.inhibited(alert, now)

    # ── dispatch ──

    def flush(self, now: Optional[float] = None, force: bool = False) -> List[Notification]:
        """Flush every group whose timer has expired (all groups with force=True)."""
        now = self._clock() if now is None else now
        sent: List[Notification] = []
        with self._lock:
            for key in list(self._groups):
                group = self._groups[key]
                if not force and now < group.next_flush:
                    continue
                group.next_flush = now + group.route.group_interval
                sent.extend(self._flush_group(group, now))
                if not group.alerts:
                    del self._groups[key]
            self._gc(now)
        return sent

    def _flush_group(self, group: AggregationGroup, now: float) -> List[Notification]:
        visible = [a for a in group.alerts.values() if not self.muted(a, now)]
        firing = {a.fingerprint for a in visible if not a.resolved(now)}
        resolved = {a.fingerprint for a in visible if a.resolved(now)}
        receiver = group.route.receiver
        integrations = self.receivers.get(receiver, [])
        limiter = self.rate_limits.get(receiver)

        sent: List[Notification] = []
        all_ok = True
        for idx, integration in enumerate(integrations):
            nkey = f"{group.key}|{receiver}|{idx}"
            entry = self._nflog.get(nkey)
            if not needs_update(entry, firing, resolved, integration.send_resolved, group.route.repeat_interval, now):
                continue

            alerts = [a for a in visible if integration.send_resolved or not a.resolved(now)]
            if not alerts:
                # nothing the receiver wants to see; just remember the state
                self._nflog[nkey] = NotifyEntry(set(firing), set(resolved), now)
                continue

            if limiter is not None and not limiter.try_acquire(now):
                retry_at = limiter.next_available(now)
                group.next_flush = min(group.next_flush, retry_at)
                all_ok = False
                logger.info("Receiver %s rate limited; group %s deferred until %s", receiver, group.key, iso(retry_at))
                continue

            notification = self._build(group, receiver, alerts, now)
            ok = False
            try:
                ok = bool(integration.send(notification))
            except Exception:
                logger.exception("Receiver %s[%d] raised while notifying group %s", receiver, idx, group.key)
            if ok:
                self._nflog[nkey] = NotifyEntry(set(firing), set(resolved), now)
                sent.append(notification)
                logger.info("Notified %s[%d] for group %s (%d alerts, %s)", receiver, idx, group.key, len(alerts), notification.status)
            else:
                all_ok = False
                group.next_flush = min(group.next_flush, now + RETRY_DELAY)
                logger.warning("Notification to %s[%d] for group %s failed; will retry", receiver, idx, group.key)

        group.flushed = True
        if all_ok:
            for fp in [fp for fp, a in group.alerts.items() if a.resolved(now)]:
                group.alerts.pop(fp, None)
        return sent

    def _build(self, group: AggregationGroup, receiver: str, alerts: List[Alert], now: float) -> Notification:
        status = "firing" if any(not a.resolved(now) for a in alerts) else "resolved"
        return Notification(
            receiver=receiver,
            group_key=group.key,
            status=status,
            alerts=[replace(a) for a in alerts],
            group_labels=dict(group.labels),
            common_labels=_common([a.labels for a in alerts]),
            common_annotations=_common([a.annotations for a in alerts]),
            timestamp=now,
            external_url=self.external_url,
        )

    def _gc(self, now: float) -> None:
        in_groups = {fp for g in self._groups.values() for fp in g.alerts}
        for fp in list(self._alerts):
            a = self._alerts[fp]
            if fp not in in_groups and a.resolved(now):
                del self._alerts[fp]
        for nkey in list(self._nflog):
            if nkey.rsplit("|", 2)[0] not in self._groups and not self._nflog[nkey].firing:
                del self._nflog[nkey]
        for sid in list(self._silences):
            if self._silences[sid].ends_at < now - self.resolve_timeout:
                del self._silences[sid]

    # ── introspection ──

    def alerts(self) -> List[Alert]:
        return list(self._alerts.values())

    def groups(self) -> List[AggregationGroup]:
        return list(self._groups.values())

    # ── persistence ──

    def save_state(self, path: str) -> None:
        """Persist silences and the notification log so restarts don't re-notify."""
        st = {
            "silences": [
                {
                    "id": s.id,
                    "matchers": [str(m) for m in s.matchers],
                    "starts_at": s.starts_at,
                    "ends_at": s.ends_at,
                    "created_by": s.created_by,
                    "comment": s.comment,
                }
                for s in self._silences.values()
            ],
            "nflog": {
                k: {"firing": sorted(e.firing), "resolved": sorted(e.resolved), "sent_at": e.sent_at}
                for k, e in self._nflog.items()
            },
        }
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        tmp = f"{path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(st, f, ensure_ascii=False, indent=2)
        os.replace(tmp, path)

    def _read_state(self, path: str) -> Optional[Tuple[List[Silence], Dict[str, NotifyEntry]]]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                st = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable router state %s: %s", path, e)
            return None
        if not isinstance(st, dict):
            logger.warning("Ignoring router state %s: expected a JSON object", path)
            return None
        raw_silences = st.get("silences") or []
        raw_nflog = st.get("nflog") or {}
        if not isinstance(raw_silences, list) or not isinstance(raw_nflog, dict):
            logger.warning("Ignoring router state %s: bad silences or nflog section", path)
            return None

        silences: List[Silence] = []
        for raw in raw_silences:
            try:
                silences.append(
                    Silence(
                        id=raw["id"],
                        matchers=[parse_matcher(m) for m in raw["matchers"]],
                        starts_at=float(raw["starts_at"]),
                        ends_at=float(raw["ends_at"]),
                        created_by=raw.get("created_by", ""),
                        comment=raw.get("comment", ""),
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping bad silence in %s: %s", path, e)
        nflog: Dict[str, NotifyEntry] = {}
        for k, raw in raw_nflog.items():
            try:
                nflog[k] = NotifyEntry(set(raw["firing"]), set(raw["resolved"]), float(raw["sent_at"]))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping bad notification log entry %s in %s: %s", k, path, e)
        return silences, nflog

    def load_state(self, path: str) -> None:
        state = self._read_state(path)
        if state is None:
            return
        silences, nflog = state
        with self._lock:
            for s in silences:
                self._silences[s.id] = s
            self._nflog.update(nflog)
        logger.info("Loaded %d silences and %d notification log entries from %s", len(self._silences), len(self._nflog), path)

    def reload_silences(self, path: str) -> int:
        """Merge silences another process (jobs.silence) wrote to the state file; the file wins per id."""
        state = self._read_state(path)
        if state is None:
            return 0
        changed = 0
        with self._lock:
            for s in state[0]:
                if self._silences.get(s.id) != s:
                    self._silences[s.id] = s
                    changed += 1
        if changed:
            logger.info("Picked up %d new or changed silences from %s", changed, path)
        return changed
