from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from alerts.expr import ExpressionError, parse_duration
from alerts.router import InhibitRule, Route
from alerts.rules import ConfigError, RuleGroup, load_rule_groups, rule_groups_from_dict
from app.providers.store.labels import LABEL_NAME_RE, Matcher, parse_matcher
from scrape.targets import ScrapeJobConfig, StaticConfig

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_DB_PATH = "beacon.db"
DEFAULT_STATE_PATH = "data/alert_state.json"
DEFAULT_ROUTER_STATE_PATH = "data/router_state.json"

RECEIVER_KINDS = ("webhook_configs", "telegram_configs", "jsonl_configs", "log_configs")
# host, IPv4 or [IPv6], with an optional port
_ADDRESS_RE = re.compile(r"(?:\[[0-9a-fA-F:.]+\]|[A-Za-z0-9_.-]+)(?::(\d{1,5}))?")


@dataclass(frozen=True)
class GlobalConfig:
    scrape_interval: float = 15.0
    scrape_timeout: float = 10.0
    evaluation_interval: float = 15.0
    lookback_delta: float = 300.0
    retention: float = 15 * 86400.0
    resolve_timeout: float = 300.0
    external_labels: Dict[str, str] = field(default_factory=dict)
    external_url: str = ""


@dataclass(frozen=True)
class ReceiverConfig:
    name: str
    webhook_configs: List[Dict[str, Any]] = field(default_factory=list)
    telegram_configs: List[Dict[str, Any]] = field(default_factory=list)
    jsonl_configs: List[Dict[str, Any]] = field(default_factory=list)
    log_configs: List[Dict[str, Any]] = field(default_factory=list)
    rate_limit: Optional[Tuple[int, float]] = None


@dataclass(frozen=True)
class BeaconConfig:
    global_: GlobalConfig
    scrape_configs: List[ScrapeJobConfig]
    rule_groups: List[RuleGroup]
    route: Route
    receivers: List[ReceiverConfig]
    inhibit_rules: List[InhibitRule]
    db_path: str = DEFAULT_DB_PATH
    state_path: str = DEFAULT_STATE_PATH
    router_state_path: str = DEFAULT_ROUTER_STATE_PATH


def get_config_path() -> str:
    return os.getenv("BEACON_CONFIG") or DEFAULT_CONFIG_PATH


def get_db_path(data: Optional[Dict[str, Any]] = None) -> str:
    env_path = os.getenv("BEACON_DB_PATH")
    if env_path:
        return env_path
    return str((data or {}).get("db_path") or DEFAULT_DB_PATH)


# ── helpers ──────────────────────────────────────────────────────────────────

def _duration(raw: Any, where: str, default: Optional[float] = None) -> Optional[float]:
    if raw is None:
        return default
    try:
        d = parse_duration(raw)
    except ExpressionError as e:
        raise ConfigError(f"{where}: {e}") from e
    if d <= 0:
        raise ConfigError(f"{where}: duration must be positive")
    return d


def _mapping(raw: Any, where: str) -> Dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: expected a mapping")
    return raw


def _list(raw: Any, where: str) -> List[Any]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"{where}: expected a list")
    return raw


def _labels(raw: Any, where: str) -> Dict[str, str]:
    out = {}
    for k, v in _mapping(raw, where).items():
        if not LABEL_NAME_RE.match(str(k)):
            raise ConfigError(f"{where}.{k}: invalid label name")
        out[str(k)] = str(v)
    return out


def _matchers(raw: Any, where: str) -> List[Matcher]:
    out = []
    for i, m in enumerate(_list(raw, where)):
        try:
            out.append(parse_matcher(str(m)))
        except ValueError as e:
            raise ConfigError(f"{where}[{i}]: {e}") from e
    return out


# ── sections ─────────────────────────────────────────────────────────────────

def _parse_global(raw: Any) -> GlobalConfig:
    g = _mapping(raw, "global")
    base = GlobalConfig()
    return GlobalConfig(
        scrape_interval=_duration(g.get("scrape_interval"), "global.scrape_interval", base.scrape_interval),
        scrape_timeout=_duration(g.get("scrape_timeout"), "global.scrape_timeout", base.scrape_timeout),
        evaluation_interval=_duration(g.get("evaluation_interval"), "global.evaluation_interval", base.evaluation_interval),
        lookback_delta=_duration(g.get("lookback_delta"), "global.lookback_delta", base.lookback_delta),
        retention=_duration(g.get("retention"), "global.retention", base.retention),
        resolve_timeout=_duration(g.get("resolve_timeout"), "global.resolve_timeout", base.resolve_timeout),
        external_labels=_labels(g.get("external_labels"), "global.external_labels"),
        external_url=str(g.get("external_url") or ""),
    )


def _parse_scrape_configs(raw: Any) -> List[ScrapeJobConfig]:
    jobs: List[ScrapeJobConfig] = []
    names = set()
    for i, j in enumerate(_list(raw, "scrape_configs")):
        where = f"scrape_configs[{i}]"
        j = _mapping(j, where)
        name = j.get("job_name")
        if not name:
            raise ConfigError(f"{where}.job_name: missing")
        if name in names:
            raise ConfigError(f"{where}.job_name: duplicate job {name!r}")
        names.add(name)

        scheme = j.get("scheme", "http")
        if scheme not in ("http", "https"):
            raise ConfigError(f"{where}.scheme: must be http or https")

        statics = []
        for k, sc in enumerate(_list(j.get("static_configs"), f"{where}.static_configs")):
            sc = _mapping(sc, f"{where}.static_configs[{k}]")
            targets = [str(t) for t in _list(sc.get("targets"), f"{where}.static_configs[{k}].targets")]
            for n, t in enumerate(targets):
                m = _ADDRESS_RE.fullmatch(t)
                if not m or (m.group(1) and not 0 < int(m.group(1)) < 65536):
                    raise ConfigError(f"{where}.static_configs[{k}].targets[{n}]: invalid address {t!r}, expected host:port")
            statics.append(StaticConfig(targets=targets, labels=_labels(sc.get("labels"), f"{where}.static_configs[{k}].labels")))

        sample_limit = j.get("sample_limit", 0)
        if not isinstance(sample_limit, int) or sample_limit < 0:
            raise ConfigError(f"{where}.sample_limit: must be a non-negative integer")

        jobs.append(
            ScrapeJobConfig(
                job_name=str(name),
                static_configs=statics,
                metrics_path=str(j.get("metrics_path", "/metrics")),
                scheme=scheme,
                scrape_interval=_duration(j.get("scrape_interval"), f"{where}.scrape_interval"),
                scrape_timeout=_duration(j.get("scrape_timeout"), f"{where}.scrape_timeout"),
                sample_limit=sample_limit,
                honor_labels=bool(j.get("honor_labels", False)),
            )
        )
    return jobs


def _parse_route(raw: Any, where: str = "route") -> Route:
    r = _mapping(raw, where)
    group_by = r.get("group_by")
    if group_by is not None:
        group_by = [str(x) for x in _list(group_by, f"{where}.group_by")]
    return Route(
        receiver=r.get("receiver"),
        matchers=_matchers(r.get("matchers"), f"{where}.matchers"),
        group_by=group_by,
        group_wait=_duration(r.get("group_wait"), f"{where}.group_wait"),
        group_interval=_duration(r.get("group_interval"), f"{where}.group_interval"),
        repeat_interval=_duration(r.get("repeat_interval"), f"{where}.repeat_interval"),
        continue_=bool(r.get("continue", False)),
        routes=[_parse_route(c, f"{where}.routes[{i}]") for i, c in enumerate(_list(r.get("routes"), f"{where}.routes"))],
    )


def _parse_receivers(raw: Any) -> List[ReceiverConfig]:
    out: List[ReceiverConfig] = []
    names = set()
    for i, r in enumerate(_list(raw, "receivers")):
        where = f"receivers[{i}]"
        r = _mapping(r, where)
        name = r.get("name")
        if not name:
            raise ConfigError(f"{where}.name: missing")
        if name in names:
            raise ConfigError(f"{where}.name: duplicate receiver {name!r}")
        names.add(name)

        kinds = {}
        for kind in RECEIVER_KINDS:
            items = [_mapping(c, f"{where}.{kind}[{k}]") for k, c in enumerate(_list(r.get(kind), f"{where}.{kind}"))]
            if kind == "webhook_configs":
                for k, c in enumerate(items):
                    if not c.get("url"):
                        raise ConfigError(f"{where}.{kind}[{k}].url: missing")
            kinds[kind] = items

        rate_limit = None
        if r.get("rate_limit") is not None:
            rl = _mapping(r["rate_limit"], f"{where}.rate_limit")
            n = rl.get("max_notifications")
            if not isinstance(n, int) or n < 1:
                raise ConfigError(f"{where}.rate_limit.max_notifications: must be a positive integer")
            rate_limit = (n, _duration(rl.get("per", "1h"), f"{where}.rate_limit.per"))

        out.append(ReceiverConfig(name=str(name), rate_limit=rate_limit, **kinds))
    return out


def _parse_inhibit_rules(raw: Any) -> List[InhibitRule]:
    out = []
    for i, r in enumerate(_list(raw, "inhibit_rules")):
        where = f"inhibit_rules[{i}]"
        r = _mapping(r, where)
        source = _matchers(r.get("source_matchers"), f"{where}.source_matchers")
        target = _matchers(r.get("target_matchers"), f"{where}.target_matchers")
        if not source or not target:
            raise ConfigError(f"{where}: source_matchers and target_matchers are required")
        out.append(InhibitRule(source_matchers=source, target_matchers=target, equal=[str(x) for x in _list(r.get("equal"), f"{where}.equal")]))
    return out


def _check_route_receivers(route: Route, known: set, where: str = "route") -> None:
    if route.receiver is not None and route.receiver not in known:
        raise ConfigError(f"{where}.receiver: unknown receiver {route.receiver!r}")
    for i, child in enumerate(route.routes):
        _check_route_receivers(child, known, f"{where}.routes[{i}]")


def parse_config(data: Optional[Dict[str, Any]], base_dir: str = ".") -> BeaconConfig:
    data = _mapping(data, "config")
    glob = _parse_global(data.get("global"))

    groups: List[RuleGroup] = []
    for i, rf in enumerate(_list(data.get("rule_files"), "rule_files")):
        p = Path(rf)
        if not p.is_absolute():
            p = Path(base_dir) / p
        groups.extend(load_rule_groups(p, default_interval=glob.evaluation_interval))
    if data.get("rule_groups") is not None:
        groups.extend(rule_groups_from_dict(data["rule_groups"], glob.evaluation_interval, source="rule_groups"))
    seen = set()
    for g in groups:
        if g.name in seen:
            raise ConfigError(f"rule groups: duplicate group {g.name!r}")
        seen.add(g.name)

    receivers = _parse_receivers(data.get("receivers"))
    if data.get("route") is None:
        if not receivers:
            # no alert routing configured: log everything
            receivers = [ReceiverConfig(name="default", log_configs=[{}])]
        route = Route(receiver=receivers[0].name)
    else:
        route = _parse_route(data["route"])
    if not route.receiver:
        raise ConfigError("route.receiver: root route needs a receiver")
    if route.matchers:
        raise ConfigError("route.matchers: root route must not have matchers")
    _check_route_receivers(route, {r.name for r in receivers})

    return BeaconConfig(
        global_=glob,
        scrape_configs=_parse_scrape_configs(data.get("scrape_configs")),
        rule_groups=groups,
        route=route,
        receivers=receivers,
        inhibit_rules=_parse_inhibit_rules(data.get("inhibit_rules")),
        db_path=get_db_path(data),
        state_path=os.getenv("BEACON_STATE_PATH") or str(data.get("state_path") or DEFAULT_STATE_PATH),
        router_state_path=str(data.get("router_state_path") or DEFAULT_ROUTER_STATE_PATH),
    )


def load_config(path: Optional[str] = None) -> BeaconConfig:
    path = path or get_config_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"config: {path} not found") from None
    except yaml.YAMLError as e:
        raise ConfigError(f"config: {path}: {e}") from e
    return parse_config(data, base_dir=str(Path(path).parent))
