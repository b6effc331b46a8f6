"""
Interpolation expressions used inside attribute values.

Strings may embed ``${...}`` expressions.  The supported grammar is small:

    expr      := call | traversal | NUMBER | STRING
    call      := IDENT "(" [expr ("," expr)*] ")"
    traversal := IDENT ("." IDENT | "." "*" | "[" expr "]" | "[" "*" "]")*

Traversal roots ``var`` and ``count`` read variables and ``count.index``;
any other root is a resource type, e.g. ``aws_vpc.main.id`` or
``aws_subnet.public[*].id``.
"""
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from converge.errors import DeclarationError, UnresolvedReferenceError


class _Unknown:
    """Placeholder for a value that only exists after apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __str__(self) -> str:
        return "(known after apply)"

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()

SPLAT = "*"

_RESERVED_ROOTS = {"var", "count"}
_LITERAL_IDENTS = {"true": True, "false": False, "null": None}


class ExpressionError(DeclarationError):
    pass


# ------------------------------------------------------------------ AST
@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Traversal:
    root: str
    steps: Tuple[Tuple[str, Any], ...]  # ("attr", name) | ("index", expr) | ("splat", None)

    def text(self) -> str:
        out = self.root
        for kind, val in self.steps:
            if kind == "attr":
                out += f".{val}"
            elif kind == "splat":
                out += "[*]"
            else:
                out += "[...]"
        return out


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[Any, ...]


Expr = Union[Literal, Traversal, Call]


@dataclass(frozen=True)
class Template:
    parts: Tuple[Union[str, Expr], ...]

    @property
    def is_single(self) -> bool:
        return len(self.parts) == 1 and not isinstance(self.parts[0], str)

    @property
    def is_literal(self) -> bool:
        return all(isinstance(p, str) for p in self.parts)


@dataclass(frozen=True)
class ResourceRef:
    """A resolved reference target: base address, instance key and attribute path."""

    base: str
    key: Any  # None, an int, or SPLAT
    attribute: str

    @property
    def address(self) -> str:
        if isinstance(self.key, int):
            return f"{self.base}[{self.key}]"
        return self.base


# ------------------------------------------------------------------ tokenizer
_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+)
  | (?P<string>"(?:[^"\\]|\\.)*")
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
  | (?P<punct>[.\[\](),*])
    """,
    re.VERBOSE,
)


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise ExpressionError(f"unexpected character {text[pos]!r} in expression '{text}'")
        pos = m.end()
        kind = m.lastgroup
        if kind == "ws":
            continue
        tokens.append((kind, m.group(kind)))
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise ExpressionError(f"unexpected end of expression '{self.text}'")
        self.pos += 1
        return tok

    def _expect(self, value: str) -> None:
        kind, val = self._next()
        if val != value:
            raise ExpressionError(f"expected '{value}' but found '{val}' in '{self.text}'")

    def parse(self) -> Expr:
        expr = self._expr()
        if self._peek() is not None:
            raise ExpressionError(f"trailing input in expression '{self.text}'")
        return expr

    def _expr(self) -> Expr:
        kind, val = self._next()
        if kind == "number":
            return Literal(int(val))
        if kind == "string":
            return Literal(re.sub(r"\\(.)", r"\1", val[1:-1]))
        if kind != "ident":
            raise ExpressionError(f"unexpected '{val}' in expression '{self.text}'")

        nxt = self._peek()
        if nxt == ("punct", "("):
            return self._call(val)
        if val in _LITERAL_IDENTS and (nxt is None or nxt[1] not in (".", "[")):
            return Literal(_LITERAL_IDENTS[val])
        return self._traversal(val)

    def _call(self, name: str) -> Call:
        self._expect("(")
        args = []
        if self._peek() == ("punct", ")"):
            self._next()
            return Call(name, ())
        while True:
            args.append(self._expr())
            kind, val = self._next()
            if val == ")":
                break
            if val != ",":
                raise ExpressionError(f"expected ',' or ')' in '{self.text}'")
        return Call(name, tuple(args))

    def _traversal(self, root: str) -> Traversal:
        steps = []
        while True:
            tok = self._peek()
            if tok == ("punct", "."):
                self._next()
                kind, val = self._next()
                if val == "*":
                    steps.append(("splat", None))
                elif kind in ("ident", "number"):
                    steps.append(("attr", val))
                else:
                    raise ExpressionError(f"bad attribute access in '{self.text}'")
            elif tok == ("punct", "["):
                self._next()
                if self._peek() == ("punct", "*"):
                    self._next()
                    steps.append(("splat", None))
                else:
                    steps.append(("index", self._expr()))
                self._expect("]")
            else:
                break
        return Traversal(root, tuple(steps))


# ------------------------------------------------------------------ templates
def _split_template(text: str) -> List[Union[str, Expr]]:
    parts: List[Union[str, Expr]] = []
    buf = ""
    i = 0
    while i < len(text):
        if text.startswith("$${", i):
            buf += "${"
            i += 3
            continue
        if text.startswith("${", i):
            depth = 1
            j = i + 2
            in_str = False
            while j < len(text) and depth:
                ch = text[j]
                if in_str:
                    if ch == "\\":
                        j += 1
                    elif ch == '"':
                        in_str = False
                elif ch == '"':
                    in_str = True
                elif ch == "{":
                    depth += 1
                elif ch == "}":
                    depth -= 1
                j += 1
            if depth:
                raise ExpressionError(f"unterminated interpolation in '{text}'")
            if buf:
                parts.append(buf)
                buf = ""
            parts.append(_Parser(text[i + 2 : j - 1]).parse())
            i = j
            continue
        buf += text[i]
        i += 1
    if buf:
        parts.append(buf)
    return parts


@lru_cache(maxsize=4096)
def parse_template(text: str) -> Template:
    return Template(tuple(_split_template(text)))


def has_expressions(value: Any) -> bool:
    """True when *value* (or anything nested in it) contains an interpolation."""
    if isinstance(value, str):
        return "${" in value and not parse_template(value).is_literal
    if isinstance(value, list):
        return any(has_expressions(v) for v in value)
    if isinstance(value, dict):
        return any(has_expressions(v) for v in value.values())
    return False


# ------------------------------------------------------------------ evaluation
ResourceLookup = Callable[[ResourceRef], Any]


def _no_resources(ref: ResourceRef) -> Any:
    raise ExpressionError(f"'{ref.base}' cannot be referenced here")


@dataclass
class EvalContext:
    """Everything an expression may read while being evaluated."""

    variables: Dict[str, Any] = field(default_factory=dict)
    count_index: Optional[int] = None
    address: str = ""
    lookup: ResourceLookup = _no_resources


def _join(sep: Any, items: Any) -> str:
    return str(sep).join(_render(i) for i in items)


def _element(items: Any, index: Any) -> Any:
    if not items:
        raise ExpressionError("element() called on an empty list")
    return items[int(index) % len(items)]


def _concat(*lists: Any) -> List[Any]:
    out: List[Any] = []
    for lst in lists:
        out.extend(lst)
    return out


def _format(fmt: Any, *args: Any) -> str:
    return str(fmt) % tuple(_render(a) if isinstance(a, bool) else a for a in args)


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "length": len,
    "element": _element,
    "join": _join,
    "lower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
    "concat": _concat,
    "format": _format,
}


def _contains_unknown(val: Any) -> bool:
    if val is UNKNOWN:
        return True
    if isinstance(val, list):
        return any(_contains_unknown(v) for v in val)
    if isinstance(val, dict):
        return any(_contains_unknown(v) for v in val.values())
    return False


def _render(val: Any) -> str:
    if isinstance(val, bool):
        return "true" if val else "false"
    if val is None:
        return ""
    if isinstance(val, (list, dict)):
        raise ExpressionError("cannot interpolate a list or map into a string")
    return str(val)


def _apply_step(val: Any, kind: str, key: Any) -> Any:
    if val is UNKNOWN or key is UNKNOWN:
        return UNKNOWN
    if kind == "attr":
        if isinstance(val, dict):
            if key not in val:
                raise ExpressionError(f"no attribute '{key}'")
            return val[key]
        if isinstance(val, list) and str(key).isdigit():
            return val[int(key)]
        raise ExpressionError(f"cannot read attribute '{key}' of {type(val).__name__}")
    # index
    if isinstance(val, list):
        try:
            return val[int(key)]
        except (IndexError, ValueError) as exc:
            raise ExpressionError(f"invalid index {key!r}: {exc}") from exc
    if isinstance(val, dict):
        if str(key) not in val:
            raise ExpressionError(f"no key {key!r}")
        return val[str(key)]
    raise ExpressionError(f"cannot index {type(val).__name__}")


def _eval_steps(val: Any, steps: Tuple[Tuple[str, Any], ...], ctx: EvalContext) -> Any:
    for i, (kind, arg) in enumerate(steps):
        if kind == "splat":
            if val is UNKNOWN:
                return UNKNOWN
            if not isinstance(val, list):
                val = [val]
            rest = steps[i + 1 :]
            return [_eval_steps(item, rest, ctx) for item in val]
        key = arg if kind == "attr" else evaluate(arg, ctx)
        val = _apply_step(val, kind, key)
    return val


def resource_ref(expr: Traversal, ctx: EvalContext) -> Tuple[ResourceRef, Tuple[Tuple[str, Any], ...]]:
    """
    Split a resource traversal into its target and the remaining steps.
    Index expressions are evaluated with *ctx*.
    """
    steps = expr.steps
    if not steps or steps[0][0] != "attr":
        raise ExpressionError(f"'{expr.root}' is not a valid reference")
    base = f"{expr.root}.{steps[0][1]}"
    rest = steps[1:]
    key: Any = None
    if rest and rest[0][0] == "splat":
        key = SPLAT
        rest = rest[1:]
    elif rest and rest[0][0] == "index":
        key = evaluate(rest[0][1], ctx)
        if key is UNKNOWN or not isinstance(key, int) or isinstance(key, bool):
            raise ExpressionError(f"instance key for '{base}' must be a known integer")
        rest = rest[1:]
    if not rest or rest[0][0] != "attr":
        raise ExpressionError(f"reference to '{base}' must name an attribute")
    return ResourceRef(base, key, rest[0][1]), rest[1:]


def _eval_traversal(expr: Traversal, ctx: EvalContext) -> Any:
    if expr.root == "var":
        if not expr.steps or expr.steps[0][0] != "attr":
            raise ExpressionError("'var' must be followed by a variable name")
        name = expr.steps[0][1]
        if name not in ctx.variables:
            raise UnresolvedReferenceError(ctx.address or "expression", f"var.{name}")
        return _eval_steps(ctx.variables[name], expr.steps[1:], ctx)

    if expr.root == "count":
        if expr.steps != (("attr", "index"),):
            raise ExpressionError("only 'count.index' is supported")
        if ctx.count_index is None:
            raise ExpressionError(f"count.index used in {ctx.address or 'a resource'} without count")
        return ctx.count_index

    ref, rest = resource_ref(expr, ctx)
    val = ctx.lookup(ref)
    if ref.key == SPLAT:
        if val is UNKNOWN:
            return UNKNOWN
        return [_eval_steps(v, rest, ctx) for v in val]
    return _eval_steps(val, rest, ctx)


def evaluate(expr: Expr, ctx: EvalContext) -> Any:
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, Traversal):
        return _eval_traversal(expr, ctx)
    if isinstance(expr, Call):
        fn = FUNCTIONS.get(expr.name)
        if fn is None:
            raise ExpressionError(f"unknown function '{expr.name}'")
        args = [evaluate(a, ctx) for a in expr.args]
        if any(_contains_unknown(a) for a in args):
            return UNKNOWN
        try:
            return fn(*args)
        except ExpressionError:
            raise
        except (TypeError, ValueError, IndexError) as exc:
            raise ExpressionError(f"{expr.name}(): {exc}") from exc
    raise ExpressionError(f"cannot evaluate {expr!r}")


def evaluate_template(text: str, ctx: EvalContext) -> Any:
    tpl = parse_template(text)
    if tpl.is_literal:
        return "".join(tpl.parts)  # type: ignore[arg-type]
    if tpl.is_single:
        return evaluate(tpl.parts[0], ctx)  # type: ignore[arg-type]
    out = []
    for part in tpl.parts:
        if isinstance(part, str):
            out.append(part)
            continue
        val = evaluate(part, ctx)
        if _contains_unknown(val):
            return UNKNOWN
        out.append(_render(val))
    return "".join(out)


def evaluate_value(value: Any, ctx: EvalContext) -> Any:
    """Recursively evaluate every template inside an attribute value."""
    if isinstance(value, str):
        return evaluate_template(value, ctx) if "${" in value else value
    if isinstance(value, list):
        return [evaluate_value(v, ctx) for v in value]
    if isinstance(value, dict):
        return {k: evaluate_value(v, ctx) for k, v in value.items()}
    return value


# ------------------------------------------------------------------ static analysis
def _expr_refs(expr: Expr, ctx: EvalContext, out: List[ResourceRef]) -> None:
    if isinstance(expr, Call):
        for a in expr.args:
            _expr_refs(a, ctx, out)
    elif isinstance(expr, Traversal):
        if expr.root in _RESERVED_ROOTS:
            for kind, arg in expr.steps:
                if kind == "index":
                    _expr_refs(arg, ctx, out)
            if expr.root == "var":
                # raises for undefined variables
                _eval_traversal(Traversal(expr.root, expr.steps[:1]), ctx)
            return
        ref, rest = resource_ref(expr, ctx)
        out.append(ref)
        for kind, arg in rest:
            if kind == "index":
                _expr_refs(arg, ctx, out)


def references(value: Any, ctx: EvalContext) -> List[ResourceRef]:
    """
    Every resource reference in *value*, in the order they appear.
    Variables and count.index in index positions are resolved with *ctx*.
    """
    out: List[ResourceRef] = []
    if isinstance(value, str):
        if "${" in value:
            for part in parse_template(value).parts:
                if not isinstance(part, str):
                    _expr_refs(part, ctx, out)
    elif isinstance(value, list):
        for v in value:
            out.extend(references(v, ctx))
    elif isinstance(value, dict):
        for v in value.values():
            out.extend(references(v, ctx))
    return out


def contains_unknown(value: Any) -> bool:
    return _contains_unknown(value)
