# expressions.py
"""
`${{ ... }}` expression language.

Grammar (lowest to highest precedence, binary operators left-associative):

    or      := and ( '||' and )*
    and     := eq ( '&&' eq )*
    eq      := cmp ( ( '==' | '!=' ) cmp )*
    cmp     := unary ( ( '<' | '<=' | '>' | '>=' ) unary )*
    unary   := '!' unary | postfix
    postfix := primary ( '.' IDENT | '.' '*' | '[' or ']' | '[' '*' ']' )*
    primary := literal | IDENT '(' args ')' | IDENT | '(' or ')'

Values are None (null), bool, int/float, str, list, dict or the UNDEFINED
sentinel, which is what a missing context key or unknown identifier
evaluates to. UNDEFINED coerces like null, so `undefined == ''` is true.

Evaluation never mutates the context. The context object must provide:
    lookup(name) -> value      (may raise UndefinedContextError)
    status                     (object with success/failure/cancelled bools)
    workspace                  (Path used by hashFiles)
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, List, NoReturn, Optional, Tuple

from .errors import EvalError
from .hashing import hash_files


class Undefined:
    """Result of looking up something that does not exist."""

    _instance: Optional["Undefined"] = None

    def __new__(cls) -> "Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED = Undefined()


class ValueKind(str, Enum):
    NULL = "null"
    UNDEFINED = "undefined"
    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


class FilteredArray(list):
    """Array produced by an object filter (`a.*`); property access maps over it."""


def kind_of(value: Any) -> ValueKind:
    if value is UNDEFINED:
        return ValueKind.UNDEFINED
    if value is None:
        return ValueKind.NULL
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    if isinstance(value, dict) or hasattr(value, "items"):
        return ValueKind.OBJECT
    raise EvalError(f"unsupported value type: {type(value).__name__}")


# ---------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------

def to_number(value: Any) -> float:
    kind = kind_of(value)
    if kind in (ValueKind.NULL, ValueKind.UNDEFINED):
        return 0.0
    if kind == ValueKind.BOOLEAN:
        return 1.0 if value else 0.0
    if kind == ValueKind.NUMBER:
        return float(value)
    if kind == ValueKind.STRING:
        text = value.strip()
        if text == "":
            return 0.0
        try:
            if text.lower().startswith(("0x", "-0x")):
                return float(int(text, 16))
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def is_truthy(value: Any) -> bool:
    kind = kind_of(value)
    if kind in (ValueKind.NULL, ValueKind.UNDEFINED):
        return False
    if kind == ValueKind.BOOLEAN:
        return bool(value)
    if kind == ValueKind.NUMBER:
        return value != 0 and not math.isnan(value)
    if kind == ValueKind.STRING:
        return value != ""
    return True


def _format_number(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def to_str(value: Any) -> str:
    """String form used for interpolation and string functions."""
    kind = kind_of(value)
    if kind in (ValueKind.NULL, ValueKind.UNDEFINED):
        return ""
    if kind == ValueKind.BOOLEAN:
        return "true" if value else "false"
    if kind == ValueKind.NUMBER:
        return _format_number(value)
    if kind == ValueKind.STRING:
        return value
    return to_json(value)


def _plain(value: Any) -> Any:
    """Convert to JSON-serializable python data (UNDEFINED -> None)."""
    if value is UNDEFINED:
        return None
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return _format_number(value)
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if kind_of(value) == ValueKind.OBJECT:
        return {str(k): _plain(v) for k, v in value.items()}
    return value


def to_json(value: Any) -> str:
    return json.dumps(_plain(value), indent=2, ensure_ascii=False)


def loose_equals(a: Any, b: Any) -> bool:
    ka, kb = kind_of(a), kind_of(b)
    null_kinds = (ValueKind.NULL, ValueKind.UNDEFINED)
    if ka in null_kinds and kb in null_kinds:
        return True
    if ka == kb:
        if ka == ValueKind.STRING:
            return a.casefold() == b.casefold()
        if ka in (ValueKind.ARRAY, ValueKind.OBJECT):
            return a is b
        if ka == ValueKind.NUMBER:
            return float(a) == float(b)
        return a == b
    na, nb = to_number(a), to_number(b)
    if math.isnan(na) or math.isnan(nb):
        return False
    return na == nb


def compare(op: str, a: Any, b: Any) -> bool:
    if kind_of(a) == ValueKind.STRING and kind_of(b) == ValueKind.STRING:
        left, right = a.casefold(), b.casefold()
    else:
        left, right = to_number(a), to_number(b)
        if math.isnan(left) or math.isnan(right):
            return False
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


# ---------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?(?:0[xX][0-9a-fA-F]+|\d+(?:\.\d+)?(?:[eE][+-]?\d+)?))
  | (?P<string>'(?:[^']|'')*')
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
  | (?P<op>\|\||&&|==|!=|<=|>=|<|>|!|\(|\)|\[|\]|\.|,|\*)
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class Token:
    type: str
    value: Any
    pos: int


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise EvalError(f"unexpected character {text[pos]!r} at position {pos}", details={"expression": text})
        kind = m.lastgroup
        raw = m.group(kind)
        if kind == "number":
            value: Any = int(raw, 16) if "x" in raw.lower() else (float(raw) if any(c in raw for c in ".eE") else int(raw))
            tokens.append(Token("number", value, pos))
        elif kind == "string":
            tokens.append(Token("string", raw[1:-1].replace("''", "'"), pos))
        elif kind == "ident":
            tokens.append(Token("ident", raw, pos))
        elif kind == "op":
            tokens.append(Token(raw, raw, pos))
        pos = m.end()
    tokens.append(Token("eof", None, len(text)))
    return tokens


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

class Node:
    pass


@dataclass(frozen=True)
class Literal(Node):
    value: Any


@dataclass(frozen=True)
class ContextRef(Node):
    name: str


@dataclass(frozen=True)
class Property(Node):
    target: Node
    name: str


@dataclass(frozen=True)
class Index(Node):
    target: Node
    index: Node


@dataclass(frozen=True)
class Filter(Node):
    target: Node


@dataclass(frozen=True)
class Call(Node):
    name: str
    args: Tuple[Node, ...]


@dataclass(frozen=True)
class Not(Node):
    operand: Node


@dataclass(frozen=True)
class Binary(Node):
    op: str
    left: Node
    right: Node


STATUS_FUNCTIONS = {"success", "failure", "always", "cancelled"}

# name -> (min args, max args or None)
_ARITY: Dict[str, Tuple[int, Optional[int]]] = {
    "success": (0, 0),
    "failure": (0, 0),
    "always": (0, 0),
    "cancelled": (0, 0),
    "contains": (2, 2),
    "startswith": (2, 2),
    "endswith": (2, 2),
    "format": (1, None),
    "join": (1, 2),
    "tojson": (1, 1),
    "fromjson": (1, 1),
    "hashfiles": (1, None),
}

_KEYWORDS = {"true": True, "false": False, "null": None, "nan": math.nan, "infinity": math.inf}


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.i = 0

    def _peek(self) -> Token:
        return self.tokens[self.i]

    def _next(self) -> Token:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def _expect(self, type_: str) -> Token:
        tok = self._next()
        if tok.type != type_:
            self._fail(f"expected {type_!r}", tok)
        return tok

    def _fail(self, message: str, tok: Token) -> NoReturn:
        found = "end of expression" if tok.type == "eof" else repr(tok.value)
        raise EvalError(f"{message} but found {found} at position {tok.pos}", details={"expression": self.text})

    def parse(self) -> Node:
        if self._peek().type == "eof":
            raise EvalError("empty expression", details={"expression": self.text})
        node = self._or()
        if self._peek().type != "eof":
            self._fail("expected end of expression", self._peek())
        return node

    def _binary(self, ops: Tuple[str, ...], operand: Callable[[], Node]) -> Node:
        node = operand()
        while self._peek().type in ops:
            op = self._next().type
            node = Binary(op, node, operand())
        return node

    def _or(self) -> Node:
        return self._binary(("||",), self._and)

    def _and(self) -> Node:
        return self._binary(("&&",), self._eq)

    def _eq(self) -> Node:
        return self._binary(("==", "!="), self._cmp)

    def _cmp(self) -> Node:
        return self._binary(("<", "<=", ">", ">="), self._unary)

    def _unary(self) -> Node:
        if self._peek().type == "!":
            self._next()
            return Not(self._unary())
        return self._postfix()

    def _postfix(self) -> Node:
        node = self._primary()
        while True:
            tok = self._peek()
            if tok.type == ".":
                self._next()
                nxt = self._next()
                if nxt.type == "*":
                    node = Filter(node)
                elif nxt.type == "ident":
                    node = Property(node, nxt.value)
                else:
                    self._fail("expected property name after '.'", nxt)
            elif tok.type == "[":
                self._next()
                if self._peek().type == "*":
                    self._next()
                    node = Filter(node)
                else:
                    node = Index(node, self._or())
                self._expect("]")
            else:
                return node

    def _primary(self) -> Node:
        tok = self._next()
        if tok.type in ("number", "string"):
            return Literal(tok.value)
        if tok.type == "(":
            node = self._or()
            self._expect(")")
            return node
        if tok.type == "ident":
            if self._peek().type == "(":
                return self._call(tok)
            lowered = tok.value.lower()
            if lowered in _KEYWORDS:
                return Literal(_KEYWORDS[lowered])
            return ContextRef(lowered)
        self._fail("expected a value", tok)

    def _call(self, name_tok: Token) -> Node:
        name = name_tok.value.lower()
        if name not in _ARITY:
            raise EvalError(f"unknown function {name_tok.value!r}", details={"expression": self.text})
        self._expect("(")
        args: List[Node] = []
        if self._peek().type != ")":
            args.append(self._or())
            while self._peek().type == ",":
                self._next()
                args.append(self._or())
        self._expect(")")
        lo, hi = _ARITY[name]
        if len(args) < lo or (hi is not None and len(args) > hi):
            expected = str(lo) if lo == hi else f"{lo}..{hi if hi is not None else 'n'}"
            raise EvalError(
                f"{name_tok.value}() takes {expected} argument(s), got {len(args)}",
                details={"expression": self.text},
            )
        return Call(name, tuple(args))


@lru_cache(maxsize=2048)
def parse(text: str) -> Node:
    """Parse expression text (without the `${{ }}` wrapper) into an AST."""
    return _Parser(text).parse()


def uses_status_function(node: Node) -> bool:
    if isinstance(node, Call):
        return node.name in STATUS_FUNCTIONS or any(uses_status_function(a) for a in node.args)
    if isinstance(node, (Property, Filter)):
        return uses_status_function(node.target)
    if isinstance(node, Index):
        return uses_status_function(node.target) or uses_status_function(node.index)
    if isinstance(node, Not):
        return uses_status_function(node.operand)
    if isinstance(node, Binary):
        return uses_status_function(node.left) or uses_status_function(node.right)
    return False


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def _get_property(value: Any, name: str) -> Any:
    if isinstance(value, FilteredArray):
        out = FilteredArray()
        for item in value:
            got = _get_property(item, name)
            if got is UNDEFINED:
                continue
            if isinstance(got, FilteredArray):
                out.extend(got)
            else:
                out.append(got)
        return out
    if kind_of(value) != ValueKind.OBJECT:
        return UNDEFINED
    if name in value:
        return value[name]
    folded = name.casefold()
    for key in value.keys():
        if str(key).casefold() == folded:
            return value[key]
    return UNDEFINED


def _get_index(value: Any, index: Any) -> Any:
    if isinstance(value, FilteredArray) and kind_of(index) == ValueKind.STRING:
        return _get_property(value, index)
    kind = kind_of(value)
    if kind == ValueKind.ARRAY:
        n = to_number(index)
        if math.isnan(n) or not float(n).is_integer():
            return UNDEFINED
        i = int(n)
        if 0 <= i < len(value):
            return value[i]
        return UNDEFINED
    if kind == ValueKind.OBJECT:
        return _get_property(value, to_str(index))
    return UNDEFINED


def _filter(value: Any) -> FilteredArray:
    kind = kind_of(value)
    if kind == ValueKind.ARRAY:
        return FilteredArray(value)
    if kind == ValueKind.OBJECT:
        return FilteredArray(value.values())
    return FilteredArray()


def _format(fmt: str, args: List[Any]) -> str:
    out: List[str] = []
    i = 0
    while i < len(fmt):
        ch = fmt[i]
        if ch == "{":
            if fmt.startswith("{{", i):
                out.append("{")
                i += 2
                continue
            end = fmt.find("}", i)
            field_ = fmt[i + 1:end] if end != -1 else ""
            if end == -1 or not field_.isdigit():
                raise EvalError(f"invalid format string {fmt!r}")
            idx = int(field_)
            if idx >= len(args):
                raise EvalError(f"format string {fmt!r} references argument {idx} but only {len(args)} given")
            out.append(to_str(args[idx]))
            i = end + 1
        elif ch == "}":
            if fmt.startswith("}}", i):
                out.append("}")
                i += 2
                continue
            raise EvalError(f"invalid format string {fmt!r}")
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def _call(node: Call, ctx: Any) -> Any:
    name = node.name
    if name == "always":
        return True
    if name == "success":
        return bool(ctx.status.success) and not ctx.status.cancelled
    if name == "failure":
        return bool(ctx.status.failure)
    if name == "cancelled":
        return bool(ctx.status.cancelled)

    args = [_eval(a, ctx) for a in node.args]
    if name == "contains":
        search, item = args
        if kind_of(search) == ValueKind.ARRAY:
            return any(loose_equals(v, item) for v in search)
        return to_str(item).casefold() in to_str(search).casefold()
    if name == "startswith":
        return to_str(args[0]).casefold().startswith(to_str(args[1]).casefold())
    if name == "endswith":
        return to_str(args[0]).casefold().endswith(to_str(args[1]).casefold())
    if name == "format":
        return _format(to_str(args[0]), args[1:])
    if name == "join":
        sep = to_str(args[1]) if len(args) > 1 else ","
        if kind_of(args[0]) == ValueKind.ARRAY:
            return sep.join(to_str(v) for v in args[0])
        return to_str(args[0])
    if name == "tojson":
        return to_json(args[0])
    if name == "fromjson":
        text = to_str(args[0])
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise EvalError(f"fromJSON: invalid JSON: {e}", details={"input": text[:200]}) from e
    if name == "hashfiles":
        return hash_files([to_str(a) for a in args], ctx.workspace)
    raise EvalError(f"unknown function {name!r}")


def _eval(node: Node, ctx: Any) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, ContextRef):
        return ctx.lookup(node.name)
    if isinstance(node, Property):
        return _get_property(_eval(node.target, ctx), node.name)
    if isinstance(node, Index):
        return _get_index(_eval(node.target, ctx), _eval(node.index, ctx))
    if isinstance(node, Filter):
        return _filter(_eval(node.target, ctx))
    if isinstance(node, Call):
        return _call(node, ctx)
    if isinstance(node, Not):
        return not is_truthy(_eval(node.operand, ctx))
    if isinstance(node, Binary):
        if node.op == "&&":
            left = _eval(node.left, ctx)
            return _eval(node.right, ctx) if is_truthy(left) else left
        if node.op == "||":
            left = _eval(node.left, ctx)
            return left if is_truthy(left) else _eval(node.right, ctx)
        left, right = _eval(node.left, ctx), _eval(node.right, ctx)
        if node.op == "==":
            return loose_equals(left, right)
        if node.op == "!=":
            return not loose_equals(left, right)
        return compare(node.op, left, right)
    raise EvalError(f"cannot evaluate node {node!r}")


def evaluate(text: str, ctx: Any) -> Any:
    """Evaluate a bare expression (no `${{ }}` wrapper)."""
    return _eval(parse(text.strip()), ctx)


# ---------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------

_OPEN = "${{"


def _split_template(text: str) -> List[Tuple[bool, str]]:
    """
    Split text into (is_expression, chunk) parts. Quoted strings inside an
    expression may contain `}}`.
    """
    parts: List[Tuple[bool, str]] = []
    pos = 0
    while True:
        start = text.find(_OPEN, pos)
        if start == -1:
            if pos < len(text):
                parts.append((False, text[pos:]))
            return parts
        if start > pos:
            parts.append((False, text[pos:start]))
        i = start + len(_OPEN)
        in_string = False
        while i < len(text):
            ch = text[i]
            if ch == "'":
                in_string = not in_string
            elif not in_string and text.startswith("}}", i):
                break
            i += 1
        else:
            raise EvalError("unterminated '${{' in template", details={"template": text})
        parts.append((True, text[start + len(_OPEN):i]))
        pos = i + 2


def evaluate_template(text: Any, ctx: Any) -> Any:
    """
    Evaluate a document value. A value that is exactly one `${{ }}` returns
    the raw expression result; anything else renders to a string.
    Non-string values are returned unchanged.
    """
    if not isinstance(text, str) or _OPEN not in text:
        return text
    parts = _split_template(text.strip())
    if len(parts) == 1 and parts[0][0]:
        return evaluate(parts[0][1], ctx)
    return render(text, ctx)


def render(text: str, ctx: Any) -> str:
    """Interpolate every `${{ }}` in text."""
    if _OPEN not in text:
        return text
    out: List[str] = []
    for is_expr, chunk in _split_template(text):
        out.append(to_str(evaluate(chunk, ctx)) if is_expr else chunk)
    return "".join(out)


def strip_wrapper(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith(_OPEN) and stripped.endswith("}}"):
        parts = _split_template(stripped)
        if len(parts) == 1 and parts[0][0]:
            return parts[0][1]
    return stripped


def condition_uses_status_function(text: Optional[str]) -> bool:
    if not text or not str(text).strip():
        return False
    return uses_status_function(parse(strip_wrapper(str(text))))


def evaluate_condition(text: Any, ctx: Any) -> bool:
    """
    Evaluate an `if:` value. Missing conditions mean `success()`; a
    condition calling none of success()/failure()/always()/cancelled()
    is evaluated as `success() && (<condition>)`.
    """
    if isinstance(text, bool):
        text = "true" if text else "false"
    if text is None or not str(text).strip():
        text = "success()"
    node = parse(strip_wrapper(str(text)))
    if not uses_status_function(node):
        node = Binary("&&", Call("success", ()), node)
    return is_truthy(_eval(node, ctx))
