# conditions.py
"""
Condition expressions for jobs, steps and artifacts.

Conditions are parsed into a small tagged tree (Literal, Var, Compare, And,
Or, Not) and evaluated against an instance context:

    {
        "matrix": {"os": "ubuntu-latest", "id": "linux"},
        "env":    {...},
        "run":    {"event": "push", "sha": "...", "ref": "...", "channel": "stable"},
        "job":    {"name": "Build", "instance": "Build (ubuntu-latest, linux)"},
    }

Evaluation is permissive: unknown variables are "", and comparisons that
make no sense (e.g. "" < 3) are False instead of raising. The same
expressions power `{...}` placeholders in templates (cache keys, artifact
names and paths, cwd, runs_on) and `${{ ... }}` in env values.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, List, Mapping, Optional, Tuple, Union

from .errors import ConditionEvalError
from .ui.console import get_console


# ---------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Var:
    path: Tuple[str, ...]


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class And:
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Or:
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Not:
    operand: "Expr"


Expr = Union[Literal, Var, Compare, And, Or, Not]

COMPARE_OPS = ("==", "!=", "<=", ">=", "<", ">")


# ---------------------------------------------------------------------
# Tokenizer / parser
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<num>-?\d+(?:\.\d+)?)
      | (?P<str>'(?:[^']|'')*'|"(?:[^"\\]|\\.)*")
      | (?P<op>==|!=|<=|>=|&&|\|\||[<>!()])
      | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_][A-Za-z0-9_\-]*|\[\d+\])*)
    )
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None}


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        if text[pos:].strip() == "":
            break
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise ConditionEvalError(f"unexpected character at offset {pos}: {text[pos:pos + 10]!r}", expression=text)
        kind = m.lastgroup or ""
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> Tuple[str, str]:
        tok = self.peek()
        if tok is None:
            raise ConditionEvalError("unexpected end of expression", expression=self.text)
        self.pos += 1
        return tok

    def accept(self, op: str) -> bool:
        tok = self.peek()
        if tok is not None and tok == ("op", op):
            self.pos += 1
            return True
        return False

    def parse(self) -> Expr:
        if not self.tokens:
            raise ConditionEvalError("empty expression", expression=self.text)
        expr = self.parse_or()
        if self.peek() is not None:
            raise ConditionEvalError(f"unexpected token {self.peek()[1]!r}", expression=self.text)
        return expr

    # Binding, loosest first: ||, &&, comparison, !. So "!a == b" is "(!a) == b".

    def parse_or(self) -> Expr:
        left = self.parse_and()
        while self.accept("||"):
            left = Or(left, self.parse_and())
        return left

    def parse_and(self) -> Expr:
        left = self.parse_compare()
        while self.accept("&&"):
            left = And(left, self.parse_compare())
        return left

    def parse_compare(self) -> Expr:
        left = self.parse_unary()
        tok = self.peek()
        if tok is not None and tok[0] == "op" and tok[1] in COMPARE_OPS:
            self.pos += 1
            return Compare(tok[1], left, self.parse_unary())
        return left

    def parse_unary(self) -> Expr:
        if self.accept("!"):
            return Not(self.parse_unary())
        return self.parse_primary()

    def parse_primary(self) -> Expr:
        kind, value = self.take()
        if kind == "op" and value == "(":
            inner = self.parse_or()
            if not self.accept(")"):
                raise ConditionEvalError("missing ')'", expression=self.text)
            return inner
        if kind == "num":
            return Literal(float(value) if "." in value else int(value))
        if kind == "str":
            return Literal(_unquote(value))
        if kind == "name":
            if value in _KEYWORDS:
                return Literal(_KEYWORDS[value])
            return Var(tuple(_split_path(value)))
        raise ConditionEvalError(f"unexpected token {value!r}", expression=self.text)


def _unquote(raw: str) -> str:
    if raw[0] == "'":
        return raw[1:-1].replace("''", "'")
    return re.sub(r"\\(.)", r"\1", raw[1:-1])


def _split_path(name: str) -> List[str]:
    return [p for p in re.split(r"\.|\[|\]", name) if p]


def _strip_wrapper(text: str) -> str:
    text = text.strip()
    if text.startswith("${{") and text.endswith("}}"):
        text = text[3:-2].strip()
    return text


@lru_cache(maxsize=512)
def _parse_cached(text: str) -> Expr:
    return _Parser(text).parse()


def parse(expression: Union[str, Expr]) -> Expr:
    """Parse an expression string into a tree. Raises ConditionEvalError."""
    if not isinstance(expression, str):
        return expression
    return _parse_cached(_strip_wrapper(expression))


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value != ""
    return bool(value)


def lookup(context: Mapping[str, Any], path: Tuple[str, ...]) -> Any:
    cur: Any = context
    for part in path:
        if isinstance(cur, Mapping) and part in cur:
            cur = cur[part]
        elif isinstance(cur, (list, tuple)) and part.isdigit() and int(part) < len(cur):
            cur = cur[int(part)]
        else:
            return ""
    return "" if cur is None else cur


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _equals(a: Any, b: Any) -> bool:
    a = "" if a is None else a
    b = "" if b is None else b
    if isinstance(a, bool) or isinstance(b, bool):
        return stringify(a).lower() == stringify(b).lower()
    if isinstance(a, str) and isinstance(b, str):
        return a.casefold() == b.casefold()
    if isinstance(a, (int, float)) or isinstance(b, (int, float)):
        na, nb = _as_number(a), _as_number(b)
        return na is not None and nb is not None and na == nb
    return a == b


def _order(op: str, a: Any, b: Any) -> bool:
    na, nb = _as_number(a), _as_number(b)
    if na is not None and nb is not None and not (isinstance(a, str) and isinstance(b, str)):
        a, b = na, nb
    elif isinstance(a, str) and isinstance(b, str):
        a, b = a.casefold(), b.casefold()
    try:
        if op == "<":
            return a < b
        if op == "<=":
            return a <= b
        if op == ">":
            return a > b
        return a >= b
    except TypeError:
        return False


def evaluate(expr: Union[str, Expr], context: Mapping[str, Any]) -> Any:
    """Evaluate to a value. && and || return the deciding operand."""
    node = parse(expr)

    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Var):
        return lookup(context, node.path)
    if isinstance(node, Not):
        return not truthy(evaluate(node.operand, context))
    if isinstance(node, And):
        left = evaluate(node.left, context)
        return evaluate(node.right, context) if truthy(left) else left
    if isinstance(node, Or):
        left = evaluate(node.left, context)
        return left if truthy(left) else evaluate(node.right, context)
    if isinstance(node, Compare):
        a = evaluate(node.left, context)
        b = evaluate(node.right, context)
        if node.op == "==":
            return _equals(a, b)
        if node.op == "!=":
            return not _equals(a, b)
        return _order(node.op, a, b)
    raise ConditionEvalError(f"unknown expression node {type(node).__name__}")


def evaluate_condition(expr: Union[str, Expr, None], context: Mapping[str, Any], *, where: str = "") -> bool:
    """
    Decide whether something runs.

    None means "always". A malformed expression is reported as a warning and
    counts as False so optional steps skip instead of aborting the job.
    """
    if expr is None:
        return True
    if isinstance(expr, bool):
        return expr
    try:
        return truthy(evaluate(expr, context))
    except ConditionEvalError as e:
        get_console().print_warning(f"{where or 'condition'}: {e.message}; treating as false")
        return False


# ---------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------

def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def render_template(template: str, context: Mapping[str, Any]) -> str:
    """
    Replace every {expr} with its evaluated value.

    "{{" and "}}" produce literal braces.
        render_template("cargo-{matrix.id}-{hash_files}", ctx)
        render_template("cli{matrix.id == 'windows' && '.exe' || ''}", ctx)
    """
    out: List[str] = []
    i = 0
    n = len(template)
    while i < n:
        ch = template[i]
        if ch == "{":
            if template.startswith("{{", i):
                out.append("{")
                i += 2
                continue
            end = template.find("}", i + 1)
            if end == -1:
                raise ConditionEvalError("unclosed '{' in template", expression=template)
            out.append(stringify(evaluate(template[i + 1:end], context)))
            i = end + 1
        elif ch == "}":
            if template.startswith("}}", i):
                i += 2
            else:
                i += 1
            out.append("}")
        else:
            out.append(ch)
            i += 1
    return "".join(out)


_ENV_EXPR_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)


def render_env_value(value: str, context: Mapping[str, Any]) -> str:
    """
    Expand only ${{ expr }} in an environment value.

    Everything else is passed through untouched, so shell text such as
    "${HOME}/bin" or JSON such as '{"opt": 1}' reaches the step as written.
    """
    return _ENV_EXPR_RE.sub(lambda m: stringify(evaluate(m.group(1), context)), value)


def render_mapping(values: Mapping[str, Any], context: Mapping[str, Any]) -> dict[str, str]:
    """Render an env mapping; values go through render_env_value."""
    return {k: render_env_value(str(v), context) for k, v in values.items()}
