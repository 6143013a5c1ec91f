# cardinality/keepset.py
# Keep-set builder: metric names referenced by alerting/recording rule expressions (syntactic PromQL scan, no evaluation)

from __future__ import annotations

import re
from typing import FrozenSet, Iterable, List, Set

# Never metric names when they appear bare.
_KEYWORDS = {
    "and", "or", "unless", "bool", "offset", "by", "without", "on", "ignoring",
    "group_left", "group_right", "inf", "nan", "start", "end",
}

# Label lists follow these keywords: `sum by (job, instance) (...)`, `x / on(instance) y`.
_LABEL_LIST_KEYWORDS = {"by", "without", "on", "ignoring", "group_left", "group_right"}

# Aggregations may be written `sum by (job) (expr)`, i.e. not directly followed by `(`.
_AGGREGATIONS = {
    "sum", "min", "max", "avg", "group", "stddev", "stdvar", "count", "count_values",
    "bottomk", "topk", "quantile", "limitk", "limit_ratio",
}

_IDENT_START = re.compile(r"[A-Za-z_:]")
_IDENT = re.compile(r"[A-Za-z0-9_:]*")
_NUMBER = re.compile(r"[0-9A-Za-z_.]*")
_NAME_MATCHER = re.compile(r"""__name__\s*=\s*(["'`])((?:\\.|(?!\1).)*)\1""")


def extract_metric_names(expr: str) -> Set[str]:
    """
    Return the metric names an expression selects.

    Handles `metric`, `metric{...}`, `{__name__="metric"}`, range/subquery brackets,
    function calls, aggregation modifiers and binary-operator matching clauses.
    Regex name matchers (`__name__=~"..."`) cannot be resolved syntactically and are ignored.
    """
    out: Set[str] = set()
    s = expr or ""
    n = len(s)
    i = 0
    while i < n:
        c = s[i]
        if c == "#":
            j = s.find("\n", i)
            i = n if j < 0 else j + 1
            continue
        if c in "\"'`":
            i = _skip_string(s, i)
            continue
        if c == "{":
            j = _skip_braces(s, i)
            for m in _NAME_MATCHER.finditer(s[i + 1:j - 1]):
                out.add(m.group(2))
            i = j
            continue
        if c == "[":
            j = s.find("]", i)
            i = n if j < 0 else j + 1
            continue
        if c.isdigit() or (c == "." and i + 1 < n and s[i + 1].isdigit()):
            m = _NUMBER.match(s, i)
            i = m.end() if m and m.end() > i else i + 1
            continue
        if _IDENT_START.match(c):
            m = _IDENT.match(s, i + 1)
            end = m.end() if m else i + 1
            ident = s[i:end]
            nxt, nxt_pos = _peek_token(s, end)
            low = ident.lower()
            if low in _LABEL_LIST_KEYWORDS:
                i = _skip_parens(s, nxt_pos) if nxt == "(" else end
                continue
            if low in _KEYWORDS:
                i = end
                continue
            if nxt == "(":
                i = end  # function call or aggregation
                continue
            if low in _AGGREGATIONS and nxt in {"by", "without"}:
                i = end
                continue
            out.add(ident)
            i = end
            continue
        i += 1
    return out


def build_keep_set(
    alerting_exprs: Iterable[str],
    recording_exprs: Iterable[str],
    recording_outputs: Iterable[str] = (),
) -> FrozenSet[str]:
    """
    Every metric name referenced by any alerting or recording rule, plus the
    names recording rules write. Pure function of the rule configuration; the
    result always replaces the previous keep set (no incremental merge).
    """
    names: Set[str] = set()
    for expr in list(alerting_exprs or []) + list(recording_exprs or []):
        names |= extract_metric_names(expr)
    names |= {str(r).strip() for r in (recording_outputs or []) if str(r).strip()}
    return frozenset(names)


# ---------- scanning helpers ----------

def _skip_string(s: str, i: int) -> int:
    quote = s[i]
    j = i + 1
    while j < len(s):
        if s[j] == "\\" and quote != "`":
            j += 2
            continue
        if s[j] == quote:
            return j + 1
        j += 1
    return len(s)


def _skip_braces(s: str, i: int) -> int:
    j = i + 1
    while j < len(s):
        c = s[j]
        if c in "\"'`":
            j = _skip_string(s, j)
            continue
        if c == "}":
            return j + 1
        j += 1
    return len(s)


def _skip_parens(s: str, i: int) -> int:
    depth = 0
    j = i
    while j < len(s):
        c = s[j]
        if c in "\"'`":
            j = _skip_string(s, j)
            continue
        if c == "(":
            depth += 1
        elif c == ")":
            depth -= 1
            if depth == 0:
                return j + 1
        j += 1
    return len(s)


def _peek_token(s: str, i: int) -> tuple:
    """Next non-blank token after position i: '(' or an identifier (lowercased) or ''."""
    j = i
    while j < len(s) and s[j].isspace():
        j += 1
    if j >= len(s):
        return "", j
    if s[j] == "(":
        return "(", j
    if _IDENT_START.match(s[j]):
        m = _IDENT.match(s, j + 1)
        return s[j:(m.end() if m else j + 1)].lower(), j
    return s[j], j


__all__: List[str] = ["extract_metric_names", "build_keep_set"]
