from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from app.providers.store.labels import LABEL_NAME_RE, METRIC_NAME_RE

from .expr import VECTOR, ExpressionError, Node, node_type, parse_duration, parse_expr


class ConfigError(ValueError):
    """Invalid configuration; the message starts with the offending key path."""


@dataclass(frozen=True)
class AlertingRule:
    name: str
    expr: Node
    source: str
    for_: float = 0.0
    keep_firing_for: float = 0.0
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RecordingRule:
    name: str
    expr: Node
    source: str
    labels: Dict[str, str] = field(default_factory=dict)


Rule = Union[AlertingRule, RecordingRule]


@dataclass(frozen=True)
class RuleGroup:
    name: str
    interval: float
    rules: List[Rule] = field(default_factory=list)


# ── templating ───────────────────────────────────────────────────────────────

_TEMPLATE_RE = re.compile(
    r"\{\{\s*\$(?:labels\.(?P<label>[a-zA-Z_][a-zA-Z0-9_]*)|(?P<value>value))\s*(?:\|\s*(?P<filter>humanize))?\s*\}\}"
)

_SI_UP = ["", "k", "M", "G", "T", "P", "E"]
_SI_DOWN = ["", "m", "u", "n", "p", "f"]


def humanize(v: float) -> str:
    """1234.5 -> '1.234k', 0.0012 -> '1.2m'."""
    if math.isnan(v) or math.isinf(v) or v == 0:
        return f"{v:.4g}"
    mag = abs(v)
    if mag >= 1:
        i = 0
        while mag >= 1000 and i < len(_SI_UP) - 1:
            mag /= 1000
            v /= 1000
            i += 1
        return f"{v:.4g}{_SI_UP[i]}"
    i = 0
    while mag < 1 and i < len(_SI_DOWN) - 1:
        mag *= 1000
        v *= 1000
        i += 1
    return f"{v:.4g}{_SI_DOWN[i]}"


def render_template(text: str, labels: Mapping[str, str], value: float) -> str:
    """Expand {{ $labels.x }}, {{ $value }} and {{ $value | humanize }}."""

    def sub(m: re.Match) -> str:
        if m.group("label"):
            return labels.get(m.group("label"), "")
        if m.group("filter") == "humanize":
            return humanize(value)
        return f"{value:g}"

    return _TEMPLATE_RE.sub(sub, text)


# ── loading ──────────────────────────────────────────────────────────────────

def _duration(raw: Any, where: str) -> float:
    if raw is None:
        return 0.0
    try:
        d = parse_duration(raw)
    except ExpressionError as e:
        raise ConfigError(f"{where}: {e}") from e
    if d < 0:
        raise ConfigError(f"{where}: duration must not be negative")
    return d


def _str_map(raw: Any, where: str, check_names: bool = True) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: expected a mapping")
    out = {}
    for k, v in raw.items():
        if check_names and not LABEL_NAME_RE.match(str(k)):
            raise ConfigError(f"{where}.{k}: invalid label name")
        out[str(k)] = "" if v is None else str(v)
    return out


def parse_rule(raw: Dict[str, Any], where: str) -> Rule:
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: expected a mapping")
    expr_src = raw.get("expr")
    if expr_src is None or not str(expr_src).strip():
        raise ConfigError(f"{where}.expr: missing expression")
    expr_src = str(expr_src)
    try:
        expr = parse_expr(expr_src)
    except ExpressionError as e:
        raise ConfigError(f"{where}.expr: {e}") from e

    if "alert" in raw and "record" in raw:
        raise ConfigError(f"{where}: only one of 'alert' and 'record' may be set")

    if "alert" in raw:
        name = str(raw["alert"])
        if not LABEL_NAME_RE.match(name):
            raise ConfigError(f"{where}.alert: invalid alert name {name!r}")
        if node_type(expr) != VECTOR:
            raise ConfigError(f"{where}.expr: alerting rule expression must return an instant vector")
        return AlertingRule(
            name=name,
            expr=expr,
            source=expr_src,
            for_=_duration(raw.get("for"), f"{where}.for"),
            keep_firing_for=_duration(raw.get("keep_firing_for"), f"{where}.keep_firing_for"),
            labels=_str_map(raw.get("labels"), f"{where}.labels"),
            annotations=_str_map(raw.get("annotations"), f"{where}.annotations", check_names=False),
        )

    if "record" in raw:
        name = str(raw["record"])
        if not METRIC_NAME_RE.match(name):
            raise ConfigError(f"{where}.record: invalid metric name {name!r}")
        for key in ("for", "keep_firing_for", "annotations"):
            if key in raw:
                raise ConfigError(f"{where}.{key}: not allowed on recording rules")
        return RecordingRule(name=name, expr=expr, source=expr_src, labels=_str_map(raw.get("labels"), f"{where}.labels"))

    raise ConfigError(f"{where}: one of 'alert' or 'record' is required")


def rule_groups_from_dict(data: Any, default_interval: float = 15.0, source: str = "rules") -> List[RuleGroup]:
    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get("groups", [])
    if not isinstance(data, list):
        raise ConfigError(f"{source}.groups: expected a list")

    groups: List[RuleGroup] = []
    names = set()
    for i, g in enumerate(data):
        where = f"{source}.groups[{i}]"
        if not isinstance(g, dict) or not g.get("name"):
            raise ConfigError(f"{where}.name: missing group name")
        name = str(g["name"])
        if name in names:
            raise ConfigError(f"{where}.name: duplicate group {name!r}")
        names.add(name)
        interval = _duration(g.get("interval"), f"{where}.interval") or default_interval
        rules = [parse_rule(r, f"{where}.rules[{j}]") for j, r in enumerate(g.get("rules") or [])]
        groups.append(RuleGroup(name=name, interval=interval, rules=rules))
    return groups


def load_rule_groups(path: Union[str, Path], default_interval: float = 15.0) -> List[RuleGroup]:
    p = Path(path)
    try:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"rule_files: {p} not found") from None
    except yaml.YAMLError as e:
        raise ConfigError(f"rule_files: {p}: {e}") from e
    return rule_groups_from_dict(data, default_interval=default_interval, source=str(p))
