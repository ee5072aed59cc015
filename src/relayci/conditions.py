# conditions.py
"""
Predicate language used by stage conditions, workflow trigger filters and
gate policies.

    startsWith(ref, 'refs/heads/main') && outputs.release-info.tag != ''
    event in ['push', 'manual'] && !fork
    matrix.os == 'windows' || changed('src/**')

Evaluation fails closed: any reference that cannot be resolved makes the
whole expression false.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from fnmatch import fnmatch
from functools import lru_cache
from typing import Any, Callable, List, Mapping, Optional, Tuple

from ._log import get_logger
from .errors import ConditionEvalError, ConditionSyntaxError
from .model import TriggerContext

logger = get_logger("conditions")

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<op>\|\||&&|==|!=|<=|>=|<|>|!|\(|\)|\[|\]|,)
      | (?P<str>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<num>\d+(?:\.\d+)?(?![A-Za-z_]))
      | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z0-9_\-]+)*)
    )
    """,
    re.VERBOSE,
)

ROOTS = frozenset({"event", "ref", "branch", "fork", "actor", "workflow", "vars", "matrix", "outputs", "release"})
FUNCTIONS = frozenset({"startsWith", "endsWith", "contains", "changed"})
_KEYWORDS = {"true": True, "false": False, "null": None}

Node = Tuple[Any, ...]
OutputLookup = Callable[[str, str], str]


def _tokenize(expression: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = expression.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise ConditionSyntaxError(f"Unexpected character at {pos} in {expression!r}")
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.pos = 0

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self, value: str | None = None) -> Tuple[str, str]:
        tok = self.peek()
        if tok is None or (value is not None and tok[1] != value):
            want = value or "a token"
            raise ConditionSyntaxError(f"Expected {want} in {self.expression!r}")
        self.pos += 1
        return tok

    def at(self, value: str) -> bool:
        tok = self.peek()
        return tok is not None and tok[0] in ("op", "name") and tok[1] == value

    def parse(self) -> Node:
        node = self.parse_or()
        if self.peek() is not None:
            raise ConditionSyntaxError(f"Unexpected {self.peek()[1]!r} in {self.expression!r}")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.at("||"):
            self.take()
            node = ("or", node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_not()
        while self.at("&&"):
            self.take()
            node = ("and", node, self.parse_not())
        return node

    def parse_not(self) -> Node:
        if self.at("!"):
            self.take()
            return ("not", self.parse_not())
        return self.parse_comparison()

    def parse_comparison(self) -> Node:
        left = self.parse_primary()
        tok = self.peek()
        if tok and tok[0] == "op" and tok[1] in ("==", "!=", "<", "<=", ">", ">="):
            self.take()
            return ("cmp", tok[1], left, self.parse_primary())
        if tok and tok == ("name", "in"):
            self.take()
            return ("in", left, self.parse_primary())
        return left

    def parse_primary(self) -> Node:
        kind, value = self.take()
        if kind == "str":
            return ("lit", re.sub(r"\\(.)", r"\1", value[1:-1]))
        if kind == "num":
            return ("lit", float(value) if "." in value else int(value))
        if kind == "op" and value == "(":
            node = self.parse_or()
            self.take(")")
            return node
        if kind == "op" and value == "[":
            items: List[Node] = []
            while not self.at("]"):
                items.append(self.parse_primary())
                if not self.at("]"):
                    self.take(",")
            self.take("]")
            return ("list", items)
        if kind == "name":
            if value in _KEYWORDS:
                return ("lit", _KEYWORDS[value])
            if self.at("("):
                if value not in FUNCTIONS:
                    raise ConditionSyntaxError(f"Unknown function {value!r} in {self.expression!r}")
                self.take("(")
                args: List[Node] = []
                while not self.at(")"):
                    args.append(self.parse_or())
                    if not self.at(")"):
                        self.take(",")
                self.take(")")
                return ("call", value, args)
            root = value.split(".", 1)[0]
            if root not in ROOTS:
                raise ConditionSyntaxError(f"Unknown reference {value!r} in {self.expression!r}")
            return ("ref", value)
        raise ConditionSyntaxError(f"Unexpected {value!r} in {self.expression!r}")


@lru_cache(maxsize=512)
def parse(expression: str) -> Node:
    """Parse an expression, raising ConditionSyntaxError on invalid input."""
    if not expression or not expression.strip():
        raise ConditionSyntaxError("Empty condition expression")
    return _Parser(expression).parse()


def _walk(node: Node):
    yield node
    kind = node[0]
    if kind in ("or", "and"):
        yield from _walk(node[1])
        yield from _walk(node[2])
    elif kind == "not":
        yield from _walk(node[1])
    elif kind == "cmp":
        yield from _walk(node[2])
        yield from _walk(node[3])
    elif kind == "in":
        yield from _walk(node[1])
        yield from _walk(node[2])
    elif kind in ("list", "call"):
        for child in node[-1]:
            yield from _walk(child)


def references(expression: str) -> List[str]:
    """All dotted references used by *expression*, in order of appearance."""
    return [n[1] for n in _walk(parse(expression)) if n[0] == "ref"]


def output_references(expression: str) -> List[Tuple[str, str]]:
    """``(stage, key)`` pairs for every ``outputs.<stage>.<key>`` reference."""
    refs: List[Tuple[str, str]] = []
    for ref in references(expression):
        parts = ref.split(".")
        if parts[0] != "outputs":
            continue
        if len(parts) != 3:
            raise ConditionSyntaxError(f"Output reference must be outputs.<stage>.<key>: {ref!r}")
        refs.append((parts[1], parts[2]))
    return refs


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

@dataclass
class Scope:
    """Everything a condition may read."""
    context: TriggerContext
    matrix: Mapping[str, str] = field(default_factory=dict)
    outputs: Optional[OutputLookup] = None
    release: Optional[Callable[[], Mapping[str, str]]] = None


def _resolve(ref: str, scope: Scope) -> Any:
    root, _, rest = ref.partition(".")
    ctx = scope.context
    if not rest:
        if root == "event":
            return ctx.event.value
        if root == "ref":
            return ctx.ref
        if root == "branch":
            return ctx.branch
        if root == "fork":
            return ctx.fork
        if root == "actor":
            return ctx.actor
        if root == "workflow":
            return ctx.workflow
        raise ConditionEvalError(f"{ref!r} needs a key")

    if root == "vars":
        if rest not in ctx.values:
            raise ConditionEvalError(f"vars.{rest} is not set")
        return ctx.values[rest]
    if root == "matrix":
        if rest not in scope.matrix:
            raise ConditionEvalError(f"matrix.{rest} is not a coordinate of this stage")
        return scope.matrix[rest]
    if root == "outputs":
        stage, _, key = rest.partition(".")
        if scope.outputs is None or not key:
            raise ConditionEvalError(f"{ref!r} is not available")
        try:
            return scope.outputs(stage, key)
        except KeyError:
            raise ConditionEvalError(f"{ref!r} has not been produced") from None
    if root == "release":
        if scope.release is None:
            raise ConditionEvalError("no release decision available")
        outcome = scope.release()
        if rest not in outcome:
            raise ConditionEvalError(f"{ref!r} is not available")
        return outcome[rest]
    raise ConditionEvalError(f"Cannot resolve {ref!r}")


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _equals(a: Any, b: Any) -> bool:
    if type(a) is type(b):
        return a == b
    na, nb = _number(a), _number(b)
    if na is not None and nb is not None:
        return na == nb
    return _text(a) == _text(b)


def _order(op: str, a: Any, b: Any) -> bool:
    na, nb = _number(a), _number(b)
    left, right = (na, nb) if na is not None and nb is not None else (_text(a), _text(b))
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def _call(name: str, args: List[Any], scope: Scope) -> Any:
    if name == "changed":
        files = scope.context.changed_files
        if not files:
            raise ConditionEvalError("changed() needs changed_files on the trigger")
        patterns = [_text(a) for a in args]
        return any(fnmatch(f, p) for f in files for p in patterns)
    if len(args) != 2:
        raise ConditionEvalError(f"{name}() takes exactly 2 arguments")
    haystack, needle = args
    if name == "contains":
        if isinstance(haystack, list):
            return any(_equals(item, needle) for item in haystack)
        return _text(needle) in _text(haystack)
    if name == "startsWith":
        return _text(haystack).startswith(_text(needle))
    return _text(haystack).endswith(_text(needle))


def _eval(node: Node, scope: Scope) -> Any:
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "ref":
        return _resolve(node[1], scope)
    if kind == "list":
        return [_eval(n, scope) for n in node[1]]
    if kind == "or":
        return _truthy(_eval(node[1], scope)) or _truthy(_eval(node[2], scope))
    if kind == "and":
        return _truthy(_eval(node[1], scope)) and _truthy(_eval(node[2], scope))
    if kind == "not":
        return not _truthy(_eval(node[1], scope))
    if kind == "cmp":
        op, a, b = node[1], _eval(node[2], scope), _eval(node[3], scope)
        if op == "==":
            return _equals(a, b)
        if op == "!=":
            return not _equals(a, b)
        return _order(op, a, b)
    if kind == "in":
        container = _eval(node[2], scope)
        if not isinstance(container, list):
            raise ConditionEvalError("right side of 'in' must be a list")
        item = _eval(node[1], scope)
        return any(_equals(item, c) for c in container)
    if kind == "call":
        return _call(node[1], [_eval(a, scope) for a in node[2]], scope)
    raise ConditionEvalError(f"Unknown node {kind!r}")


def _truthy(value: Any) -> bool:
    if isinstance(value, list):
        return bool(value)
    return bool(value) if not isinstance(value, str) else value != ""


def evaluate(
    expression: str | None,
    context: TriggerContext,
    *,
    matrix: Mapping[str, str] | None = None,
    outputs: OutputLookup | None = None,
    release: Callable[[], Mapping[str, str]] | None = None,
) -> bool:
    """
    Evaluate *expression* against a trigger context.

    A missing expression is true. Unresolvable references and evaluation
    errors yield False instead of raising.
    """
    if expression is None or not expression.strip():
        return True
    scope = Scope(context=context, matrix=dict(matrix or {}), outputs=outputs, release=release)
    try:
        return _truthy(_eval(parse(expression), scope))
    except ConditionEvalError as e:
        logger.debug("condition %r is false: %s", expression, e)
        return False
    except ConditionSyntaxError as e:
        logger.warning("condition %r is invalid: %s", expression, e)
        return False
