"""
Prometheus text exposition format parser.

    # HELP http_requests_total Total requests.
    # TYPE http_requests_total counter
    http_requests_total{method="post",code="200"} 1027 1395066363000

Sample lines are decoded one at a time with prometheus_client's text parser;
this module adds the checks it leaves out (label names and escapes, duplicate
labels, the value and timestamp grammar) and reports the offending line.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from prometheus_client.parser import text_string_to_metric_families

from app.providers.store.labels import METRIC_NAME

METRIC_TYPES = ("counter", "gauge", "histogram", "summary", "untyped")

_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_PAIR_RE = re.compile(r'\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*=\s*"((?:[^"\\]|\\.)*)"\s*(?:,|\Z)')
_ESCAPE_RE = re.compile(r"\\(.)")
_VALUE_RE = re.compile(r"[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|[Ii]nf|NaN|nan)")
_TIMESTAMP_RE = re.compile(r"-?\d+")


class ExpositionParseError(ValueError):
    def __init__(self, line_no: int, line: str, reason: str) -> None:
        super().__init__(f"line {line_no}: {reason}: {line!r}")
        self.line_no = line_no
        self.line = line
        self.reason = reason


@dataclass
class ParsedSample:
    name: str
    labels: Dict[str, str]  # includes __name__
    value: float
    timestamp: Optional[float]  # seconds


def _check_labels(block: str, line_no: int, line: str) -> None:
    """block is the text between '{' and the closing '}'."""
    seen = set()
    pos = 0
    while pos < len(block.rstrip()):
        m = _LABEL_PAIR_RE.match(block, pos)
        if not m:
            raise ExpositionParseError(line_no, line, "invalid label set")
        name, raw = m.group(1), m.group(2)
        for esc in _ESCAPE_RE.finditer(raw):
            if esc.group(1) not in '\\n"':
                raise ExpositionParseError(line_no, line, "invalid escape sequence")
        if name in seen:
            raise ExpositionParseError(line_no, line, f"duplicate label {name}")
        seen.add(name)
        pos = m.end()


def _parse_sample_line(line: str, line_no: int, default_ts: Optional[float]) -> ParsedSample:
    if "{" in line:
        name, _, rest = line.partition("{")
        if "}" not in rest:
            raise ExpositionParseError(line_no, line, "unterminated label set")
        # values and timestamps never contain '}'
        block, _, tail = rest.rpartition("}")
        _check_labels(block, line_no, line)
        if tail and tail[0] not in " \t":
            raise ExpositionParseError(line_no, line, "expected whitespace after label set")
    else:
        name, _, tail = line.replace("\t", " ").partition(" ")
    if not _NAME_RE.fullmatch(name.strip()):
        raise ExpositionParseError(line_no, line, "invalid metric name")

    tokens = tail.split()
    if len(tokens) not in (1, 2):
        raise ExpositionParseError(line_no, line, "expected value and optional timestamp")
    if not _VALUE_RE.fullmatch(tokens[0]):
        raise ExpositionParseError(line_no, line, f"invalid value {tokens[0]!r}")
    ts = default_ts
    if len(tokens) == 2:
        if not _TIMESTAMP_RE.fullmatch(tokens[1]):
            raise ExpositionParseError(line_no, line, f"invalid timestamp {tokens[1]!r}")
        ts = int(tokens[1]) / 1000.0

    try:
        [family] = list(text_string_to_metric_families(line))
        [sample] = family.samples
    except ValueError as e:
        raise ExpositionParseError(line_no, line, str(e) or "unparseable sample") from None

    labels = {str(k): str(v) for k, v in sample.labels.items()}
    labels[METRIC_NAME] = sample.name
    return ParsedSample(name=sample.name, labels=labels, value=float(sample.value), timestamp=ts)


def _parse(text: str, default_ts: Optional[float]):
    samples: List[ParsedSample] = []
    types: Dict[str, str] = {}
    helps: Dict[str, str] = {}

    for line_no, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue

        if line.startswith("#"):
            parts = line[1:].strip().split(None, 2)
            if len(parts) >= 2 and parts[0] in ("HELP", "TYPE"):
                metric = parts[1]
                if not _NAME_RE.fullmatch(metric):
                    raise ExpositionParseError(line_no, raw, "invalid metric name in metadata")
                rest = parts[2] if len(parts) > 2 else ""
                if parts[0] == "TYPE":
                    if rest not in METRIC_TYPES:
                        raise ExpositionParseError(line_no, raw, f"unknown metric type {rest!r}")
                    types[metric] = rest
                else:
                    helps[metric] = rest
            # anything else after '#' is a comment
            continue

        samples.append(_parse_sample_line(line, line_no, default_ts))

    return samples, types, helps


def parse_exposition(text: str, default_ts: Optional[float] = None) -> List[ParsedSample]:
    """Parse a scrape body; samples without an explicit timestamp get default_ts."""
    samples, _, _ = _parse(text, default_ts)
    return samples


def metric_types(text: str) -> Dict[str, str]:
    _, types, _ = _parse(text, None)
    return types


def metric_help(text: str) -> Dict[str, str]:
    _, _, helps = _parse(text, None)
    return helps
