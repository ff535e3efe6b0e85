"""
A PromQL subset: selectors, range selectors, arithmetic/comparison/set
operators with on()/ignoring() matching, aggregations and the common
range functions. Parsed once into an AST, evaluated against the store at
an instant.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from app.providers.store.labels import METRIC_NAME, Matcher, fingerprint, unescape_value, without_name
from app.providers.store.sqlite_store import SQLiteStore, StoreError

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK = 300.0


class ExpressionError(ValueError):
    pass


# ── durations ────────────────────────────────────────────────────────────────

_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 7 * 86400,
    "y": 365 * 86400,
}
_DURATION_RE = re.compile(r"^(?:\d+(?:ms|[smhdwy]))+$")
_DURATION_PART_RE = re.compile(r"(\d+)(ms|[smhdwy])")


def parse_duration(text: Union[str, int, float]) -> float:
    """'1h30m' -> 5400.0. Bare numbers are seconds."""
    if isinstance(text, (int, float)):
        return float(text)
    s = str(text).strip()
    if re.fullmatch(r"\d+(?:\.\d+)?", s):
        return float(s)
    if not _DURATION_RE.match(s):
        raise ExpressionError(f"invalid duration {text!r}")
    return float(sum(int(n) * _UNIT_SECONDS[u] for n, u in _DURATION_PART_RE.findall(s)))


def format_duration(seconds: float) -> str:
    if seconds == 0:
        return "0s"
    out = []
    rest = int(round(seconds * 1000))
    for unit in ("y", "w", "d", "h", "m", "s"):
        size = int(_UNIT_SECONDS[unit] * 1000)
        n, rest = divmod(rest, size)
        if n:
            out.append(f"{n}{unit}")
    if rest:
        out.append(f"{rest}ms")
    return "".join(out)


# ── values ───────────────────────────────────────────────────────────────────

@dataclass
class Sample:
    labels: Dict[str, str]
    value: float


class Vector(list):
    pass


@dataclass
class Scalar:
    value: float


@dataclass
class RangeSeries:
    labels: Dict[str, str]
    samples: pd.Series


class Matrix(list):
    pass


# ── AST ──────────────────────────────────────────────────────────────────────

@dataclass
class NumberLiteral:
    value: float


@dataclass
class VectorSelector:
    name: Optional[str]
    matchers: List[Matcher]


@dataclass
class MatrixSelector:
    vector: VectorSelector
    range: float


@dataclass
class Call:
    func: str
    args: List["Node"]


@dataclass
class Aggregate:
    op: str
    expr: "Node"
    param: Optional["Node"] = None
    grouping: List[str] = field(default_factory=list)
    without: bool = False


@dataclass
class VectorMatching:
    on: bool
    labels: List[str]


@dataclass
class BinaryExpr:
    op: str
    lhs: "Node"
    rhs: "Node"
    return_bool: bool = False
    matching: Optional[VectorMatching] = None


@dataclass
class UnaryExpr:
    op: str
    expr: "Node"


Node = Union[NumberLiteral, VectorSelector, MatrixSelector, Call, Aggregate, BinaryExpr, UnaryExpr]

SCALAR, VECTOR, MATRIX = "scalar", "instant vector", "range vector"

AGGREGATIONS = {"sum", "avg", "min", "max", "count", "stddev", "topk", "bottomk"}
COMPARISONS = {"==", "!=", ">", "<", ">=", "<="}
ARITHMETIC = {"+", "-", "*", "/", "%", "^"}
SET_OPS = {"and", "or", "unless"}

PRECEDENCE = {
    "or": 1,
    "and": 2,
    "unless": 2,
    "==": 3, "!=": 3, ">": 3, "<": 3, ">=": 3, "<=": 3,
    "+": 4, "-": 4,
    "*": 5, "/": 5, "%": 5,
    "^": 6,
}

# name -> (argument types, number of trailing optional args, return type)
FUNCTIONS: Dict[str, Tuple[Tuple[str, ...], int, str]] = {
    "rate": ((MATRIX,), 0, VECTOR),
    "increase": ((MATRIX,), 0, VECTOR),
    "delta": ((MATRIX,), 0, VECTOR),
    "irate": ((MATRIX,), 0, VECTOR),
    "avg_over_time": ((MATRIX,), 0, VECTOR),
    "min_over_time": ((MATRIX,), 0, VECTOR),
    "max_over_time": ((MATRIX,), 0, VECTOR),
    "sum_over_time": ((MATRIX,), 0, VECTOR),
    "count_over_time": ((MATRIX,), 0, VECTOR),
    "quantile_over_time": ((SCALAR, MATRIX), 0, VECTOR),
    "absent_over_time": ((MATRIX,), 0, VECTOR),
    "absent": ((VECTOR,), 0, VECTOR),
    "abs": ((VECTOR,), 0, VECTOR),
    "ceil": ((VECTOR,), 0, VECTOR),
    "floor": ((VECTOR,), 0, VECTOR),
    "round": ((VECTOR, SCALAR), 1, VECTOR),
    "clamp_min": ((VECTOR, SCALAR), 0, VECTOR),
    "clamp_max": ((VECTOR, SCALAR), 0, VECTOR),
    "histogram_quantile": ((SCALAR, VECTOR), 0, VECTOR),
    "scalar": ((VECTOR,), 0, SCALAR),
    "vector": ((SCALAR,), 0, VECTOR),
    "time": ((), 0, SCALAR),
}


def node_type(node: Node) -> str:
    if isinstance(node, NumberLiteral):
        return SCALAR
    if isinstance(node, VectorSelector):
        return VECTOR
    if isinstance(node, MatrixSelector):
        return MATRIX
    if isinstance(node, Call):
        return FUNCTIONS[node.func][2]
    if isinstance(node, Aggregate):
        return VECTOR
    if isinstance(node, UnaryExpr):
        return node_type(node.expr)
    if isinstance(node, BinaryExpr):
        if node_type(node.lhs) == SCALAR and node_type(node.rhs) == SCALAR:
            return SCALAR
        return VECTOR
    raise ExpressionError(f"unknown node {node!r}")


# ── lexer ────────────────────────────────────────────────────────────────────

@dataclass
class Token:
    kind: str
    text: str
    pos: int


_TOKEN_PATTERNS = [
    ("WS", r"\s+"),
    ("COMMENT", r"#[^\n]*"),
    ("RANGE", r"\[\s*[0-9a-zA-Z]+\s*\]"),
    ("NUMBER", r"0[xX][0-9a-fA-F]+|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?"),
    ("STRING", r'"(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\'|`[^`]*`'),
    ("IDENT", r"[a-zA-Z_:][a-zA-Z0-9_:]*"),
    ("OP", r"==|!=|>=|<=|=~|!~|[-+*/%^<>=]"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("LBRACE", r"\{"),
    ("RBRACE", r"\}"),
    ("COMMA", r","),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_PATTERNS))


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise ExpressionError(f"unexpected character {text[pos]!r} at position {pos}")
        kind = m.lastgroup
        if kind not in ("WS", "COMMENT"):
            tokens.append(Token(kind, m.group(0), pos))
        pos = m.end()
    tokens.append(Token("EOF", "", len(text)))
    return tokens


# ── parser ───────────────────────────────────────────────────────────────────

class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = tokenize(text)
        self.i = 0

    def peek(self, offset: int = 0) -> Token:
        return self.tokens[min(self.i + offset, len(self.tokens) - 1)]

    def advance(self) -> Token:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def expect(self, kind: str, text: Optional[str] = None) -> Token:
        tok = self.peek()
        if tok.kind != kind or (text is not None and tok.text != text):
            want = text or kind
            raise ExpressionError(f"expected {want!r} at position {tok.pos}, got {tok.text or 'end of input'!r}")
        return self.advance()

    def error(self, msg: str) -> ExpressionError:
        return ExpressionError(f"{msg} at position {self.peek().pos}")

    def parse(self) -> Node:
        node = self.parse_expr(1)
        if self.peek().kind != "EOF":
            raise self.error(f"unexpected {self.peek().text!r}")
        return node

    def _binary_op(self) -> Optional[str]:
        tok = self.peek()
        if tok.kind == "OP" and tok.text in PRECEDENCE:
            return tok.text
        if tok.kind == "IDENT" and tok.text.lower() in SET_OPS:
            return tok.text.lower()
        return None

    def parse_expr(self, min_prec: int) -> Node:
        lhs = self.parse_unary()
        while True:
            op = self._binary_op()
            if op is None or PRECEDENCE[op] < min_prec:
                return lhs
            self.advance()

            return_bool = False
            if op in COMPARISONS and self.peek().kind == "IDENT" and self.peek().text == "bool":
                self.advance()
                return_bool = True

            matching = None
            if self.peek().kind == "IDENT" and self.peek().text in ("on", "ignoring"):
                on = self.advance().text == "on"
                matching = VectorMatching(on=on, labels=self.parse_label_list())
            if self.peek().kind == "IDENT" and self.peek().text in ("group_left", "group_right"):
                raise self.error("many-to-one matching is not supported")

            next_min = PRECEDENCE[op] if op == "^" else PRECEDENCE[op] + 1
            rhs = self.parse_expr(next_min)
            lhs = self._check_binary(BinaryExpr(op, lhs, rhs, return_bool, matching))

    def parse_unary(self) -> Node:
        tok = self.peek()
        if tok.kind == "OP" and tok.text in ("-", "+"):
            self.advance()
            # unary binds looser than '^': -2^2 == -4
            operand = self.parse_expr(PRECEDENCE["^"])
            if node_type(operand) == MATRIX:
                raise self.error("unary operator on range vector")
            if tok.text == "+":
                return operand
            if isinstance(operand, NumberLiteral):
                return NumberLiteral(-operand.value)
            return UnaryExpr("-", operand)
        return self.parse_primary()

    def parse_primary(self) -> Node:
        tok = self.peek()

        if tok.kind == "NUMBER":
            self.advance()
            value = float(int(tok.text, 16)) if tok.text.lower().startswith("0x") else float(tok.text)
            return NumberLiteral(value)

        if tok.kind == "LPAREN":
            self.advance()
            node = self.parse_expr(1)
            self.expect("RPAREN")
            return self._maybe_range(node)

        if tok.kind == "LBRACE":
            return self._maybe_range(self.parse_selector(None))

        if tok.kind == "IDENT":
            name = tok.text
            nxt = self.peek(1)
            if name in AGGREGATIONS and (nxt.kind == "LPAREN" or (nxt.kind == "IDENT" and nxt.text in ("by", "without"))):
                return self.parse_aggregate()
            if nxt.kind == "LPAREN":
                return self.parse_call()
            if name.lower() in ("inf", "nan"):
                self.advance()
                return NumberLiteral(float(name))
            if name in ("offset", "bool", "by", "without", "on", "ignoring") or name.lower() in SET_OPS:
                raise self.error(f"unexpected keyword {name!r}")
            self.advance()
            return self._maybe_range(self.parse_selector(name))

        raise self.error(f"unexpected {tok.text or 'end of input'!r}")

    def _maybe_range(self, node: Node) -> Node:
        if self.peek().kind != "RANGE":
            return node
        tok = self.advance()
        if not isinstance(node, VectorSelector):
            raise ExpressionError(f"range selector only allowed on a vector selector, at position {tok.pos}")
        rng = parse_duration(tok.text[1:-1].strip())
        if rng <= 0:
            raise ExpressionError(f"range must be positive, at position {tok.pos}")
        return MatrixSelector(node, rng)

    def parse_selector(self, name: Optional[str]) -> VectorSelector:
        matchers: List[Matcher] = []
        if name is not None:
            matchers.append(Matcher(METRIC_NAME, "=", name))
        if self.peek().kind == "LBRACE":
            self.advance()
            while self.peek().kind != "RBRACE":
                label = self.expect("IDENT").text
                op_tok = self.expect("OP")
                if op_tok.text not in ("=", "!=", "=~", "!~"):
                    raise ExpressionError(f"invalid label matcher operator {op_tok.text!r} at position {op_tok.pos}")
                value = self._string(self.expect("STRING").text)
                try:
                    matchers.append(Matcher(label, op_tok.text, value))
                except ValueError as e:
                    raise ExpressionError(str(e)) from e
                if self.peek().kind == "COMMA":
                    self.advance()
                elif self.peek().kind != "RBRACE":
                    raise self.error("expected ',' or '}' in label matchers")
            self.advance()

        if not matchers or all(m.matches_empty() for m in matchers):
            raise self.error("vector selector must contain at least one non-empty matcher")
        names = [m.value for m in matchers if m.name == METRIC_NAME and m.op == "="]
        if name is not None and len(names) > 1:
            raise self.error("metric name must not be set twice")
        return VectorSelector(name if name is not None else (names[0] if names else None), matchers)

    @staticmethod
    def _string(raw: str) -> str:
        if raw.startswith("`"):
            return raw[1:-1]
        return unescape_value(raw[1:-1])

    def parse_label_list(self) -> List[str]:
        self.expect("LPAREN")
        labels: List[str] = []
        while self.peek().kind != "RPAREN":
            labels.append(self.expect("IDENT").text)
            if self.peek().kind == "COMMA":
                self.advance()
            elif self.peek().kind != "RPAREN":
                raise self.error("expected ',' or ')' in label list")
        self.advance()
        return labels

    def _parse_args(self) -> List[Node]:
        self.expect("LPAREN")
        args: List[Node] = []
        while self.peek().kind != "RPAREN":
            args.append(self.parse_expr(1))
            if self.peek().kind == "COMMA":
                self.advance()
            elif self.peek().kind != "RPAREN":
                raise self.error("expected ',' or ')' in argument list")
        self.advance()
        return args

    def parse_aggregate(self) -> Aggregate:
        op = self.advance().text
        grouping: List[str] = []
        without = False
        have_grouping = False
        if self.peek().kind == "IDENT" and self.peek().text in ("by", "without"):
            without = self.advance().text == "without"
            grouping = self.parse_label_list()
            have_grouping = True

        args = self._parse_args()

        if self.peek().kind == "IDENT" and self.peek().text in ("by", "without"):
            if have_grouping:
                raise self.error("aggregation grouping given twice")
            without = self.advance().text == "without"
            grouping = self.parse_label_list()

        if op in ("topk", "bottomk"):
            if len(args) != 2:
                raise ExpressionError(f"{op} expects 2 arguments, got {len(args)}")
            param, expr = args
            if node_type(param) != SCALAR:
                raise ExpressionError(f"expected scalar parameter for {op}")
        else:
            if len(args) != 1:
                raise ExpressionError(f"{op} expects 1 argument, got {len(args)}")
            param, expr = None, args[0]
        if node_type(expr) != VECTOR:
            raise ExpressionError(f"expected instant vector in aggregation {op}, got {node_type(expr)}")
        return Aggregate(op, expr, param, grouping, without)

    def parse_call(self) -> Call:
        tok = self.advance()
        name = tok.text
        if name not in FUNCTIONS:
            raise ExpressionError(f"unknown function {name!r} at position {tok.pos}")
        arg_types, optional, _ = FUNCTIONS[name]
        args = self._parse_args()
        if not len(arg_types) - optional <= len(args) <= len(arg_types):
            raise ExpressionError(f"wrong number of arguments for {name}: got {len(args)}")
        for want, arg in zip(arg_types, args):
            got = node_type(arg)
            if got != want:
                raise ExpressionError(f"expected type {want} in call to function {name}, got {got}")
        return Call(name, args)

    def _check_binary(self, node: BinaryExpr) -> BinaryExpr:
        lt, rt = node_type(node.lhs), node_type(node.rhs)
        if MATRIX in (lt, rt):
            raise ExpressionError(f"binary expression must contain only scalar and instant vector types ({node.op})")
        if node.op in SET_OPS and (lt != VECTOR or rt != VECTOR):
            raise ExpressionError(f"set operator {node.op} not allowed with scalar operands")
        if node.op in COMPARISONS and lt == SCALAR and rt == SCALAR and not node.return_bool:
            raise ExpressionError("comparisons between scalars must use BOOL modifier")
        if node.matching is not None and (lt != VECTOR or rt != VECTOR):
            raise ExpressionError("vector matching only allowed between instant vectors")
        return node


def parse_expr(text: str) -> Node:
    if not text or not text.strip():
        raise ExpressionError("empty expression")
    return _Parser(text).parse()


# ── evaluation helpers ───────────────────────────────────────────────────────

def _arith(op: str, a: float, b: float) -> float:
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op == "/":
        if b == 0:
            if a == 0 or math.isnan(a):
                return math.nan
            return math.copysign(math.inf, a) * math.copysign(1.0, b)
        return a / b
    if op == "%":
        if b == 0 or math.isinf(a):
            return math.nan
        return math.fmod(a, b)
    if op == "^":
        try:
            return math.pow(a, b)
        except OverflowError:
            return math.inf
        except ValueError:
            return math.nan
    raise ExpressionError(f"unknown operator {op}")


def _compare(op: str, a: float, b: float) -> bool:
    if op == "==":
        return a == b
    if op == "!=":
        return a != b
    if op == ">":
        return a > b
    if op == "<":
        return a < b
    if op == ">=":
        return a >= b
    if op == "<=":
        return a <= b
    raise ExpressionError(f"unknown comparison {op}")


def _signature(labels: Dict[str, str], matching: Optional[VectorMatching]) -> str:
    if matching is not None and matching.on:
        return fingerprint({k: labels[k] for k in matching.labels if k in labels})
    ignored = set(matching.labels) if matching is not None else set()
    return fingerprint({k: v for k, v in labels.items() if k != METRIC_NAME and k not in ignored})


def _result_labels(labels: Dict[str, str], op: str, return_bool: bool, matching: Optional[VectorMatching]) -> Dict[str, str]:
    out = dict(labels)
    if op in ARITHMETIC or return_bool:
        out.pop(METRIC_NAME, None)
    if matching is not None:
        if matching.on:
            out = {k: v for k, v in out.items() if k in matching.labels}
        else:
            out = {k: v for k, v in out.items() if k not in matching.labels}
    return out


def extrapolated_rate(samples: pd.Series, range_seconds: float, ts: float, is_counter: bool, is_rate: bool) -> Optional[float]:
    """Counter-reset aware, boundary-extrapolated rate/increase/delta over (ts - range, ts]."""
    if len(samples) < 2:
        return None
    times = samples.index.to_numpy(dtype=float)
    values = samples.to_numpy(dtype=float)

    result = values[-1] - values[0]
    if is_counter:
        drops = values[1:] < values[:-1]
        result += float(values[:-1][drops].sum())

    range_start = ts - range_seconds
    duration_to_start = times[0] - range_start
    duration_to_end = ts - times[-1]
    sampled = times[-1] - times[0]
    if sampled <= 0:
        return None
    avg_step = sampled / (len(samples) - 1)

    if is_counter and result > 0 and values[0] >= 0:
        # counters can't go below zero; don't extrapolate past the zero point
        duration_to_zero = sampled * (values[0] / result)
        if duration_to_zero < duration_to_start:
            duration_to_start = duration_to_zero

    threshold = avg_step * 1.1
    interval = sampled
    interval += duration_to_start if duration_to_start < threshold else avg_step / 2
    interval += duration_to_end if duration_to_end < threshold else avg_step / 2

    result *= interval / sampled
    if is_rate:
        result /= range_seconds
    return float(result)


def _instant_rate(samples: pd.Series) -> Optional[float]:
    if len(samples) < 2:
        return None
    t = samples.index.to_numpy(dtype=float)
    v = samples.to_numpy(dtype=float)
    dt = t[-1] - t[-2]
    if dt <= 0:
        return None
    diff = v[-1] if v[-1] < v[-2] else v[-1] - v[-2]
    return float(diff / dt)


def _quantile(q: float, values: np.ndarray) -> float:
    if len(values) == 0 or math.isnan(q):
        return math.nan
    if q < 0:
        return -math.inf
    if q > 1:
        return math.inf
    return float(np.quantile(values, q))


def bucket_quantile(q: float, buckets: List[Tuple[float, float]]) -> float:
    """Quantile from cumulative (upper_bound, count) histogram buckets."""
    if math.isnan(q):
        return math.nan
    if q < 0:
        return -math.inf
    if q > 1:
        return math.inf
    buckets = sorted(buckets, key=lambda b: b[0])
    if len(buckets) < 2 or not math.isinf(buckets[-1][0]):
        return math.nan
    # scrape races can leave cumulative counts non-monotonic
    counts = np.maximum.accumulate([c for _, c in buckets])
    bounds = [b for b, _ in buckets]
    observations = counts[-1]
    if observations == 0:
        return math.nan

    rank = q * observations
    b = int(np.searchsorted(counts, rank, side="left"))
    if b == len(bounds) - 1:
        return bounds[-2]
    if b == 0 and bounds[0] <= 0:
        return bounds[0]

    start, end, count = 0.0, bounds[b], counts[b]
    if b > 0:
        start = bounds[b - 1]
        count -= counts[b - 1]
        rank -= counts[b - 1]
    if count == 0:
        return end
    return float(start + (end - start) * (rank / count))


# ── engine ───────────────────────────────────────────────────────────────────

Value = Union[Vector, Scalar, Matrix]


class Engine:
    def __init__(self, store: SQLiteStore, lookback: float = DEFAULT_LOOKBACK) -> None:
        self.store = store
        self.lookback = lookback

    def instant_query(self, expr: Union[str, Node], ts: float) -> Union[Vector, Scalar]:
        node = parse_expr(expr) if isinstance(expr, str) else expr
        try:
            result = self._eval(node, ts)
        except StoreError as e:
            raise ExpressionError(f"store query failed: {e}") from e
        if isinstance(result, Matrix):
            raise ExpressionError("range vector is not a valid query result")
        return result

    def range_query(self, expr: Union[str, Node], start: float, end: float, step: float) -> List[Tuple[Dict[str, str], pd.Series]]:
        if step <= 0:
            raise ExpressionError("step must be positive")
        if end < start:
            raise ExpressionError("end must not be before start")
        node = parse_expr(expr) if isinstance(expr, str) else expr
        points: Dict[str, Tuple[Dict[str, str], List[float], List[float]]] = {}
        n_steps = int(math.floor((end - start) / step + 1e-9))
        for i in range(n_steps + 1):
            t = start + i * step
            result = self.instant_query(node, t)
            samples = [Sample({}, result.value)] if isinstance(result, Scalar) else result
            for s in samples:
                fp = fingerprint(s.labels)
                entry = points.setdefault(fp, (s.labels, [], []))
                entry[1].append(t)
                entry[2].append(s.value)
        return [(labels, pd.Series(values, index=times, dtype=float)) for labels, times, values in points.values()]

    # ── dispatch ──

    def _eval(self, node: Node, ts: float) -> Value:
        if isinstance(node, NumberLiteral):
            return Scalar(node.value)
        if isinstance(node, VectorSelector):
            return Vector(Sample(labels, value) for labels, _, value in self.store.instant(node.matchers, ts, self.lookback))
        if isinstance(node, MatrixSelector):
            series = self.store.select(node.vector.matchers, ts - node.range, ts)
            return Matrix(RangeSeries(s.labels, s.samples) for s in series if len(s.samples))
        if isinstance(node, UnaryExpr):
            val = self._eval(node.expr, ts)
            if isinstance(val, Scalar):
                return Scalar(-val.value)
            return Vector(Sample(without_name(s.labels), -s.value) for s in val)
        if isinstance(node, BinaryExpr):
            return self._eval_binary(node, ts)
        if isinstance(node, Aggregate):
            return self._eval_aggregate(node, ts)
        if isinstance(node, Call):
            return self._eval_call(node, ts)
        raise ExpressionError(f"cannot evaluate {node!r}")

    # ── binary ──

    def _eval_binary(self, node: BinaryExpr, ts: float) -> Value:
        lhs = self._eval(node.lhs, ts)
        rhs = self._eval(node.rhs, ts)
        op = node.op

        if isinstance(lhs, Scalar) and isinstance(rhs, Scalar):
            if op in COMPARISONS:
                return Scalar(1.0 if _compare(op, lhs.value, rhs.value) else 0.0)
            return Scalar(_arith(op, lhs.value, rhs.value))

        if op in SET_OPS:
            return self._eval_set(op, lhs, rhs, node.matching)

        if isinstance(rhs, Scalar) or isinstance(lhs, Scalar):
            return self._vector_scalar(node, lhs, rhs)

        return self._vector_vector(node, lhs, rhs)

    def _vector_scalar(self, node: BinaryExpr, lhs: Value, rhs: Value) -> Vector:
        op = node.op
        scalar_left = isinstance(lhs, Scalar)
        vec = rhs if scalar_left else lhs
        k = lhs.value if scalar_left else rhs.value
        out = Vector()
        for s in vec:
            a, b = (k, s.value) if scalar_left else (s.value, k)
            if op in COMPARISONS:
                hit = _compare(op, a, b)
                if node.return_bool:
                    out.append(Sample(without_name(s.labels), 1.0 if hit else 0.0))
                elif hit:
                    out.append(Sample(dict(s.labels), s.value))
            else:
                out.append(Sample(without_name(s.labels), _arith(op, a, b)))
        return out

    def _vector_vector(self, node: BinaryExpr, lhs: Vector, rhs: Vector) -> Vector:
        op = node.op
        right: Dict[str, Sample] = {}
        for s in rhs:
            sig = _signature(s.labels, node.matching)
            if sig in right:
                raise ExpressionError(f"many-to-many matching not allowed: duplicate series on the right-hand side for {sig}")
            right[sig] = s

        seen = set()
        out = Vector()
        for s in lhs:
            sig = _signature(s.labels, node.matching)
            other = right.get(sig)
            if other is None:
                continue
            if sig in seen:
                raise ExpressionError(f"found duplicate series for the match group {sig} on the left-hand side")
            seen.add(sig)
            labels = _result_labels(s.labels, op, node.return_bool, node.matching)
            if op in COMPARISONS:
                hit = _compare(op, s.value, other.value)
                if node.return_bool:
                    out.append(Sample(labels, 1.0 if hit else 0.0))
                elif hit:
                    out.append(Sample(labels, s.value))
            else:
                out.append(Sample(labels, _arith(op, s.value, other.value)))
        return out

    @staticmethod
    def _eval_set(op: str, lhs: Vector, rhs: Vector, matching: Optional[VectorMatching]) -> Vector:
        right_sigs = {_signature(s.labels, matching) for s in rhs}
        if op == "and":
            return Vector(s for s in lhs if _signature(s.labels, matching) in right_sigs)
        if op == "unless":
            return Vector(s for s in lhs if _signature(s.labels, matching) not in right_sigs)
        left_sigs = {_signature(s.labels, matching) for s in lhs}
        out = Vector(lhs)
        out.extend(s for s in rhs if _signature(s.labels, matching) not in left_sigs)
        return out

    # ── aggregation ──

    def _eval_aggregate(self, node: Aggregate, ts: float) -> Vector:
        vec = self._eval(node.expr, ts)
        groups: Dict[str, Tuple[Dict[str, str], List[Sample]]] = {}
        for s in vec:
            if node.without:
                glabels = {k: v for k, v in s.labels.items() if k != METRIC_NAME and k not in node.grouping}
            else:
                glabels = {k: s.labels[k] for k in node.grouping if k in s.labels}
            groups.setdefault(fingerprint(glabels), (glabels, []))[1].append(s)

        out = Vector()
        if node.op in ("topk", "bottomk"):
            k_val = self._eval(node.param, ts).value
            if math.isnan(k_val):
                raise ExpressionError(f"parameter of {node.op} must not be NaN")
            if math.isinf(k_val):
                raise ExpressionError(f"parameter of {node.op} overflows an integer: {k_val}")
            k = int(k_val)
            if k < 1:
                return out
            reverse = node.op == "topk"
            for _, members in groups.values():
                # NaN always sorts last
                ranked = sorted(
                    members,
                    key=lambda s: (math.isnan(s.value), -s.value if reverse else s.value),
                )
                out.extend(Sample(dict(s.labels), s.value) for s in ranked[:k])
            return out

        for glabels, members in groups.values():
            values = np.array([s.value for s in members], dtype=float)
            if node.op == "sum":
                val = float(values.sum())
            elif node.op == "avg":
                val = float(values.mean())
            elif node.op == "count":
                val = float(len(values))
            elif node.op == "stddev":
                val = float(values.std(ddof=0))
            elif node.op in ("min", "max"):
                finite = values[~np.isnan(values)]
                if len(finite) == 0:
                    val = math.nan
                else:
                    val = float(finite.min() if node.op == "min" else finite.max())
            else:
                raise ExpressionError(f"unknown aggregation {node.op}")
            out.append(Sample(glabels, val))
        return out

    # ── functions ──

    def _eval_call(self, node: Call, ts: float) -> Value:
        name = node.func
        args = node.args

        if name == "time":
            return Scalar(float(ts))

        if name in ("rate", "increase", "delta", "irate") or name.endswith("_over_time"):
            return self._eval_range_func(node, ts)

        if name == "absent":
            vec = self._eval(args[0], ts)
            if vec:
                return Vector()
            return Vector([Sample(_absent_labels(args[0]), 1.0)])

        if name == "scalar":
            vec = self._eval(args[0], ts)
            return Scalar(vec[0].value if len(vec) == 1 else math.nan)

        if name == "vector":
            return Vector([Sample({}, self._eval(args[0], ts).value)])

        if name == "histogram_quantile":
            q = self._eval(args[0], ts).value
            vec = self._eval(args[1], ts)
            buckets: Dict[str, Tuple[Dict[str, str], List[Tuple[float, float]]]] = {}
            for s in vec:
                if "le" not in s.labels:
                    continue
                try:
                    upper = float(s.labels["le"])
                except ValueError:
                    continue
                base = {k: v for k, v in s.labels.items() if k not in ("le", METRIC_NAME)}
                buckets.setdefault(fingerprint(base), (base, []))[1].append((upper, s.value))
            return Vector(Sample(base, bucket_quantile(q, bs)) for base, bs in buckets.values())

        vec = self._eval(args[0], ts)
        fn = _elementwise(name, [self._eval(a, ts).value for a in args[1:]])
        return Vector(Sample(without_name(s.labels), fn(s.value)) for s in vec)

    def _eval_range_func(self, node: Call, ts: float) -> Vector:
        name = node.func
        if name == "quantile_over_time":
            q = self._eval(node.args[0], ts).value
            sel = node.args[1]
        else:
            q = math.nan
            sel = node.args[0]
        matrix = self._eval(sel, ts)
        rng = sel.range

        if name == "absent_over_time":
            if matrix:
                return Vector()
            return Vector([Sample(_absent_labels(sel.vector), 1.0)])

        out = Vector()
        for series in matrix:
            samples = series.samples
            if name == "rate":
                val = extrapolated_rate(samples, rng, ts, is_counter=True, is_rate=True)
            elif name == "increase":
                val = extrapolated_rate(samples, rng, ts, is_counter=True, is_rate=False)
            elif name == "delta":
                val = extrapolated_rate(samples, rng, ts, is_counter=False, is_rate=False)
            elif name == "irate":
                val = _instant_rate(samples)
            elif name == "avg_over_time":
                val = float(samples.mean())
            elif name == "min_over_time":
                val = float(samples.min())
            elif name == "max_over_time":
                val = float(samples.max())
            elif name == "sum_over_time":
                val = float(samples.sum())
            elif name == "count_over_time":
                val = float(len(samples))
            elif name == "quantile_over_time":
                val = _quantile(q, samples.to_numpy(dtype=float))
            else:
                raise ExpressionError(f"unknown range function {name}")
            if val is None:
                continue
            out.append(Sample(without_name(series.labels), val))
        return out


def _absent_labels(node: Node) -> Dict[str, str]:
    if not isinstance(node, VectorSelector):
        return {}
    out: Dict[str, str] = {}
    seen = set()
    for m in node.matchers:
        if m.name == METRIC_NAME:
            continue
        if m.op == "=" and m.name not in seen:
            out[m.name] = m.value
            seen.add(m.name)
        elif m.op == "=":
            # conflicting equality matchers give no label
            out.pop(m.name, None)
    return out


def _elementwise(name: str, params: Sequence[float]) -> Callable[[float], float]:
    if name == "abs":
        return abs
    if name == "ceil":
        return lambda v: v if math.isnan(v) or math.isinf(v) else float(math.ceil(v))
    if name == "floor":
        return lambda v: v if math.isnan(v) or math.isinf(v) else float(math.floor(v))
    if name == "round":
        to_nearest = params[0] if params else 1.0
        if to_nearest == 0:
            return lambda v: math.nan
        return lambda v: v if math.isnan(v) or math.isinf(v) else float(math.floor(v / to_nearest + 0.5) * to_nearest)
    if name == "clamp_min":
        return lambda v: v if math.isnan(v) else max(v, params[0])
    if name == "clamp_max":
        return lambda v: v if math.isnan(v) else min(v, params[0])
    raise ExpressionError(f"unknown function {name}")
