from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Pattern

METRIC_NAME = "__name__"

METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

MATCH_OPS = ("=~", "!~", "!=", "=")

_MATCHER_RE = re.compile(
    r"""^\s*(?P<name>[a-zA-Z_][a-zA-Z0-9_]*)\s*(?P<op>=~|!~|!=|=)\s*(?P<value>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*'|[^\s"']*)\s*$"""
)


def escape_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def unescape_value(value: str) -> str:
    out = []
    i = 0
    while i < len(value):
        ch = value[i]
        if ch == "\\" and i + 1 < len(value):
            nxt = value[i + 1]
            out.append("\n" if nxt == "n" else nxt)
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def normalize(labels: Mapping[str, str]) -> Dict[str, str]:
    """Drop empty-valued labels: an empty value is the same as no label."""
    return {k: str(v) for k, v in labels.items() if v is not None and str(v) != ""}


def without_name(labels: Mapping[str, str]) -> Dict[str, str]:
    return {k: v for k, v in labels.items() if k != METRIC_NAME}


def fingerprint(labels: Mapping[str, str]) -> str:
    """
    Canonical series identity: name{k1="v1",k2="v2"} with sorted keys.
    Label order never changes the identity.
    """
    name = labels.get(METRIC_NAME, "")
    inner = ",".join(
        f'{k}="{escape_value(str(v))}"'
        for k, v in sorted(labels.items())
        if k != METRIC_NAME and v != ""
    )
    return f"{name}{{{inner}}}"


@dataclass(frozen=True)
class Matcher:
    name: str
    op: str
    value: str
    _regex: Pattern = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.op not in MATCH_OPS:
            raise ValueError(f"unknown match operator {self.op!r}")
        if self.op in ("=~", "!~"):
            try:
                compiled = re.compile(f"^(?:{self.value})$")
            except re.error as e:
                raise ValueError(f"invalid regular expression {self.value!r}: {e}") from e
            object.__setattr__(self, "_regex", compiled)

    def matches(self, labels: Mapping[str, str]) -> bool:
        actual = labels.get(self.name, "")
        if self.op == "=":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        hit = self._regex.match(actual) is not None
        return hit if self.op == "=~" else not hit

    def matches_empty(self) -> bool:
        return self.matches({})

    def __str__(self) -> str:
        return f'{self.name}{self.op}"{escape_value(self.value)}"'


def parse_matcher(text: str) -> Matcher:
    """Parse 'name="value"', 'name=~"re"' and unquoted 'name=value' forms."""
    m = _MATCHER_RE.match(text)
    if not m:
        raise ValueError(f"invalid matcher {text!r}")
    raw = m.group("value")
    if raw[:1] in ('"', "'"):
        raw = unescape_value(raw[1:-1])
    return Matcher(m.group("name"), m.group("op"), raw)


def matches_all(matchers: Iterable[Matcher], labels: Mapping[str, str]) -> bool:
    return all(m.matches(labels) for m in matchers)
