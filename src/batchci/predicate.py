# predicate.py
"""
Gating expressions for stages.

A stage's ``if`` expression decides whether it runs or is skipped. The
language is the small boolean dialect CI pipelines use for conditionals:

    build.pull_request.repository.fork == null ||
    build.pull_request.repository.fork == false

Supported: ``||``, ``&&``, ``!``, parentheses, ``==``, ``!=``, ``=~`` and
``!~`` (right-hand side is a ``/regex/`` literal), the literals ``null``,
``true``, ``false``, quoted strings and integers, and dotted variable paths
rooted at one of KNOWN_ROOTS.

Expressions are compiled once, when the pipeline is resolved. Compilation is
the only place that raises; evaluation is total.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Optional

from .errors import PredicateError
from .model import RunContext

KNOWN_ROOTS = frozenset({"build", "pipeline", "organization", "env"})

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<op>\|\||&&|==|!=|=~|!~|!|\(|\))
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<regex>/(?:[^/\\]|\\.)*/i?)
  | (?P<number>-?\d+)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(source: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if m is None:
            raise PredicateError(
                f"unexpected character {source[pos]!r} at offset {pos}",
                details={"expression": source.strip()},
            )
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, m.group(), pos))
        pos = m.end()
    return tokens


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

def _truthy(value: Any) -> bool:
    return value not in (None, False, "", 0)


@dataclass(frozen=True)
class _Literal:
    value: Any

    def eval(self, ctx: RunContext) -> Any:
        return self.value


@dataclass(frozen=True)
class _Var:
    path: str

    def eval(self, ctx: RunContext) -> Any:
        return ctx.get(self.path)


@dataclass(frozen=True)
class _Regex:
    pattern: "re.Pattern[str]"

    def eval(self, ctx: RunContext) -> Any:
        return self.pattern.pattern


@dataclass(frozen=True)
class _Not:
    operand: Any

    def eval(self, ctx: RunContext) -> Any:
        return not _truthy(self.operand.eval(ctx))


@dataclass(frozen=True)
class _BoolOp:
    op: str
    left: Any
    right: Any

    def eval(self, ctx: RunContext) -> Any:
        if self.op == "&&":
            return _truthy(self.left.eval(ctx)) and _truthy(self.right.eval(ctx))
        return _truthy(self.left.eval(ctx)) or _truthy(self.right.eval(ctx))


@dataclass(frozen=True)
class _Compare:
    op: str
    left: Any
    right: Any

    def eval(self, ctx: RunContext) -> Any:
        if self.op in ("=~", "!~"):
            value = self.left.eval(ctx)
            hit = isinstance(value, str) and self.right.pattern.search(value) is not None
            return hit if self.op == "=~" else not hit

        lhs = _normalize(self.left.eval(ctx))
        rhs = _normalize(self.right.eval(ctx))
        return (lhs == rhs) if self.op == "==" else (lhs != rhs)


def _normalize(value: Any) -> Any:
    # Context values often arrive from the environment as strings.
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
        if lowered == "null":
            return None
    return value


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.i = 0

    def error(self, message: str) -> PredicateError:
        return PredicateError(message, details={"expression": self.source.strip()})

    def peek(self) -> Optional[_Token]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def take(self) -> _Token:
        tok = self.peek()
        if tok is None:
            raise self.error("unexpected end of expression")
        self.i += 1
        return tok

    def accept(self, *ops: str) -> Optional[_Token]:
        tok = self.peek()
        if tok is not None and tok.kind == "op" and tok.text in ops:
            self.i += 1
            return tok
        return None

    def parse(self):
        if not self.tokens:
            raise self.error("empty expression")
        node = self.parse_or()
        tok = self.peek()
        if tok is not None:
            raise self.error(f"unexpected {tok.text!r} at offset {tok.pos}")
        return node

    def parse_or(self):
        node = self.parse_and()
        while self.accept("||"):
            node = _BoolOp("||", node, self.parse_and())
        return node

    def parse_and(self):
        node = self.parse_unary()
        while self.accept("&&"):
            node = _BoolOp("&&", node, self.parse_unary())
        return node

    def parse_unary(self):
        if self.accept("!"):
            return _Not(self.parse_unary())
        return self.parse_comparison()

    def parse_comparison(self):
        left = self.parse_operand()
        tok = self.accept("==", "!=", "=~", "!~")
        if tok is None:
            return left
        if tok.text in ("=~", "!~"):
            right = self.parse_operand()
            if not isinstance(right, _Regex):
                raise self.error(f"'{tok.text}' needs a /regex/ on its right-hand side")
            return _Compare(tok.text, left, right)
        right = self.parse_operand()
        if isinstance(left, _Regex) or isinstance(right, _Regex):
            raise self.error("regex literals can only be used with =~ or !~")
        return _Compare(tok.text, left, right)

    def parse_operand(self):
        tok = self.take()
        if tok.kind == "op":
            if tok.text == "(":
                node = self.parse_or()
                if not self.accept(")"):
                    raise self.error(f"missing ')' for '(' at offset {tok.pos}")
                return node
            raise self.error(f"unexpected {tok.text!r} at offset {tok.pos}")
        if tok.kind == "string":
            return _Literal(_unquote(tok.text))
        if tok.kind == "number":
            return _Literal(int(tok.text))
        if tok.kind == "regex":
            return _Regex(self._compile_regex(tok.text))
        if tok.text == "null":
            return _Literal(None)
        if tok.text == "true":
            return _Literal(True)
        if tok.text == "false":
            return _Literal(False)

        root = tok.text.split(".", 1)[0]
        if root not in KNOWN_ROOTS:
            raise self.error(
                f"unknown variable '{tok.text}' (must start with one of: {', '.join(sorted(KNOWN_ROOTS))})"
            )
        return _Var(tok.text)

    def _compile_regex(self, text: str) -> "re.Pattern[str]":
        flags = 0
        if text.endswith("i"):
            flags = re.IGNORECASE
            text = text[:-1]
        try:
            return re.compile(text[1:-1], flags)
        except re.error as e:
            raise self.error(f"invalid regex {text}: {e}") from e


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

class Predicate:
    """A compiled gating expression."""

    def __init__(self, source: str, root: Any):
        self.source = source
        self._root = root

    def __call__(self, context: RunContext) -> bool:
        return _truthy(self._root.eval(context))

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Predicate) and other.source == self.source

    def __hash__(self) -> int:
        return hash(self.source)

    def __repr__(self) -> str:
        return f"Predicate({self.source!r})"


def compile_predicate(source: str | bool) -> Predicate:
    """
    Compile a gating expression.

    Raises:
        PredicateError: if the expression is malformed or references an
            unknown variable root.
    """
    if isinstance(source, bool):
        return Predicate("true" if source else "false", _Literal(source))
    if not isinstance(source, str):
        raise PredicateError(f"predicate must be a string, got {type(source).__name__}")
    return Predicate(source.strip(), _Parser(source).parse())


def evaluate(predicate: Optional[Predicate], context: RunContext) -> bool:
    """Decide whether a stage runs. No predicate means always run."""
    if predicate is None:
        return True
    return predicate(context)


class PredicateEvaluator:
    """Stateless evaluator handed to the scheduler."""

    def evaluate(self, predicate: Optional[Predicate], context: RunContext) -> bool:
        return evaluate(predicate, context)
