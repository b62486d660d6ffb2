# comtrade_MultiFileAnalyzer/computed/expression.py
"""
Equation text -> internal expression -> compiled code object.

The internal form is a small math language (``^`` for powers, function calls
from a closed set); it is checked against an AST whitelist before compiling,
so nothing outside arithmetic, comparisons and the listed functions can run.
"""
from __future__ import annotations
import ast
import logging
import math
import re
from dataclasses import dataclass

import numpy as np
from scipy import special

from ..core.errors import ValidationFailure

_LOG = logging.getLogger(__name__)

MAX_NAME_LENGTH = 50

BUILTIN_FUNCTIONS: frozenset[str] = frozenset({
    "sin", "cos", "tan", "asin", "acos", "atan", "atan2",
    "sinh", "cosh", "tanh", "asinh", "acosh", "atanh",
    "sqrt", "pow", "abs", "log", "log10", "log2", "exp",
    "min", "max", "sum", "mean", "median", "std", "variance", "random",
    "floor", "ceil", "round", "fix", "sign", "mod", "gcd", "lcm", "factorial",
})
BUILTIN_CONSTANTS: frozenset[str] = frozenset({"pi", "e", "i"})
BUILTINS: frozenset[str] = BUILTIN_FUNCTIONS | BUILTIN_CONSTANTS

RESERVED_KEYWORDS: frozenset[str] = frozenset({
    "computed", "data", "results", "stats", "unit", "equation", "mathJsExpression",
    "sampleCount", "index", "createdAt", "id", "name", "time", "analogData", "digitalData",
})

_NAME_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*=(?!=)(.*)$", re.DOTALL)
_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class ExpressionResult:
    valid: bool
    name: str | None = None
    internal: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        if not self.valid:
            return {"valid": False, "error": self.error}
        return {"valid": True, "name": self.name, "internal": self.internal}


# ---------- name handling ----------

def extract_channel_name(text: str) -> str | None:
    m = _NAME_RE.match(text or "")
    return m.group(1) if m else None


def extract_math_expression(text: str) -> str:
    m = _NAME_RE.match(text or "")
    return (m.group(2) if m else (text or "")).strip()


def validate_channel_name(name: str) -> tuple[bool, str | None]:
    if not name or not name.strip():
        return False, "Channel name is empty"
    if len(name) > MAX_NAME_LENGTH:
        return False, f"Channel name is longer than {MAX_NAME_LENGTH} characters"
    if not _IDENT_RE.match(name):
        return False, "Channel name must start with a letter or underscore and contain only letters, digits and underscores"
    if name in BUILTINS:
        return False, f"'{name}' is a built-in function name"
    if name in RESERVED_KEYWORDS:
        return False, f"'{name}' is a reserved keyword"
    return True, None


# ---------- LaTeX-ish surface -> internal ----------

def _take_group(s: str, start: int) -> tuple[str, int] | None:
    """Return the contents of the brace group opening at ``start`` and the index after it."""
    if start >= len(s) or s[start] != "{":
        return None
    depth = 0
    for j in range(start, len(s)):
        if s[j] == "{":
            depth += 1
        elif s[j] == "}":
            depth -= 1
            if depth == 0:
                return s[start + 1:j], j + 1
    return None


def _rewrite_command(s: str, command: str, nargs: int, render) -> str:
    out = []
    i = 0
    while True:
        k = s.find(command, i)
        if k < 0:
            out.append(s[i:])
            return "".join(out)
        j = k + len(command)
        while j < len(s) and s[j] == " ":
            j += 1
        args = []
        for _ in range(nargs):
            grp = _take_group(s, j)
            if grp is None:
                break
            args.append(grp[0])
            j = grp[1]
        if len(args) != nargs:
            out.append(s[i:k + len(command)])
            i = k + len(command)
            continue
        out.append(s[i:k])
        out.append(render(*[_convert(a) for a in args]))
        i = j


_SIMPLE = (
    (re.compile(r"\\left\\lvert|\\left\|"), "abs("),
    (re.compile(r"\\right\\rvert|\\right\|"), ")"),
    (re.compile(r"\\left\s*[(\[]"), "("),
    (re.compile(r"\\right\s*[)\]]"), ")"),
    (re.compile(r"\\(?:cdot|times)(?![A-Za-z])"), "*"),
    (re.compile(r"\\div(?![A-Za-z])"), "/"),
    (re.compile(r"\\(?:leq|le)(?![A-Za-z])"), "<="),
    (re.compile(r"\\(?:geq|ge)(?![A-Za-z])"), ">="),
    (re.compile(r"\\(?:neq|ne)(?![A-Za-z])"), "!="),
    (re.compile(r"\\pi(?![A-Za-z])|π"), "pi"),
)
_RMS = re.compile(r"\\operatorname\{RMS\}\s*\((.*?)\)")
_AVG = re.compile(r"\\operatorname\{AVG\}\s*\(")
_OPNAME = re.compile(r"\\operatorname\{([A-Za-z_][A-Za-z0-9_]*)\}")
_SUBSCRIPT = re.compile(r"([A-Za-z0-9])_\{([A-Za-z0-9_]*)\}")
_POWER = re.compile(r"\^\{([^{}]*)\}")
_LEFTOVER_CMD = re.compile(r"\\[A-Za-z]+|\\[,;:! ]")
_NUM_BEFORE = re.compile(r"(?<![A-Za-z0-9_.])(\d+(?:\.\d+)?)(?![eE][+-]?\d)(?=[A-Za-z_(])")
_CLOSE_BEFORE = re.compile(r"\)(?=[A-Za-z0-9_(])")


def _convert(s: str) -> str:
    for pat, repl in _SIMPLE:
        s = pat.sub(repl, s)
    s = _RMS.sub(lambda m: f"sqrt(mean(({m.group(1)})^2))", s)
    s = _AVG.sub("mean(", s)
    s = _OPNAME.sub(lambda m: m.group(1), s)
    s = _rewrite_command(s, "\\frac", 2, lambda a, b: f"({a})/({b})")
    s = _rewrite_command(s, "\\sqrt", 1, lambda a: f"sqrt({a})")
    s = _SUBSCRIPT.sub(lambda m: m.group(1) + m.group(2), s)
    s = _POWER.sub(lambda m: f"^({m.group(1)})", s)
    s = _LEFTOVER_CMD.sub("", s)
    s = s.replace("{", "").replace("}", "")
    return s


def convert_latex(text: str) -> str:
    """Rewrite presentation math to the internal form; already-internal text comes back unchanged."""
    s = _convert(text or "")
    s = _NUM_BEFORE.sub(r"\1*", s)
    s = _CLOSE_BEFORE.sub(")*", s)
    return re.sub(r"\s+", " ", s).strip()


# ---------- compile ----------

_ALLOWED_NODES = (
    ast.Expression, ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare, ast.Call,
    ast.Name, ast.Load, ast.Constant,
    ast.Add, ast.Sub, ast.Mult, ast.Div, ast.Pow, ast.Mod,
    ast.UAdd, ast.USub, ast.Not, ast.And, ast.Or,
    ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE,
)


def to_python_source(internal: str) -> str:
    s = internal.replace("^", "**")
    s = s.replace("&&", " and ").replace("||", " or ")
    s = re.sub(r"!(?!=)", " not ", s)
    return s


def _check_tree(tree: ast.AST) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ValidationFailure(f"Unsupported syntax: {type(node).__name__}")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise ValidationFailure(f"Invalid identifier: {node.id}")
        if isinstance(node, ast.Constant) and not isinstance(node.value, (int, float, complex, bool)):
            raise ValidationFailure(f"Unsupported literal: {node.value!r}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in BUILTIN_FUNCTIONS:
                fname = node.func.id if isinstance(node.func, ast.Name) else type(node.func).__name__
                raise ValidationFailure(f"Unknown function: {fname}")
            if node.keywords:
                raise ValidationFailure(f"Keyword arguments are not supported in {node.func.id}()")


class _DivisionRewriter(ast.NodeTransformer):
    """``a / b`` -> ``_div(a, b)`` so a zero divisor yields NaN for scalars and numpy values alike."""

    def visit_BinOp(self, node):
        self.generic_visit(node)
        if isinstance(node.op, ast.Div):
            call = ast.Call(func=ast.Name(id="_div", ctx=ast.Load()), args=[node.left, node.right], keywords=[])
            return ast.copy_location(call, node)
        return node


def compile_expression(internal: str):
    if not internal or not internal.strip():
        raise ValidationFailure("Expression is empty")
    source = to_python_source(internal)
    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as e:
        raise ValidationFailure(f"Syntax error: {e.msg} (char {e.offset})", expression=internal) from e
    _check_tree(tree)
    tree = ast.fix_missing_locations(_DivisionRewriter().visit(tree))
    return compile(tree, "<expression>", "eval")


# ---------- evaluation scope ----------

def _div(a, b):
    if b == 0:
        return float("nan")
    return a / b


def _log(x, base=None):
    if base is None:
        return np.log(x)
    return np.log(x) / np.log(base)


def _round(x, n=0):
    return np.round(x, int(n))


def _int_op(fn):
    def wrapped(*args):
        return fn(*[int(a) for a in args])
    return wrapped


FUNCTIONS: dict = {
    "sin": np.sin, "cos": np.cos, "tan": np.tan,
    "asin": np.arcsin, "acos": np.arccos, "atan": np.arctan, "atan2": np.arctan2,
    "sinh": np.sinh, "cosh": np.cosh, "tanh": np.tanh,
    "asinh": np.arcsinh, "acosh": np.arccosh, "atanh": np.arctanh,
    "sqrt": np.sqrt, "pow": np.power, "abs": np.abs,
    "log": _log, "log10": np.log10, "log2": np.log2, "exp": np.exp,
    "min": lambda *a: float(np.min(a)), "max": lambda *a: float(np.max(a)),
    "sum": lambda *a: float(np.sum(a)), "mean": lambda *a: float(np.mean(a)),
    "median": lambda *a: float(np.median(a)),
    "std": lambda *a: float(np.std(a, ddof=1)) if len(a) > 1 else 0.0,
    "variance": lambda *a: float(np.var(a, ddof=1)) if len(a) > 1 else 0.0,
    "random": lambda *a: float(np.random.random()),
    "floor": np.floor, "ceil": np.ceil, "round": _round, "fix": np.fix,
    "sign": np.sign, "mod": np.mod,
    "gcd": _int_op(math.gcd), "lcm": _int_op(math.lcm),
    "factorial": lambda x: float(special.factorial(x, exact=False)),
}

CONSTANTS: dict = {"pi": math.pi, "e": math.e, "i": 1j, "true": True, "false": False}


def base_scope() -> dict:
    scope = {"__builtins__": {}, "_div": _div}
    scope.update(FUNCTIONS)
    scope.update(CONSTANTS)
    return scope


# ---------- public entry ----------

def process_equation(text: str) -> ExpressionResult:
    """Validate and convert user input. Never evaluates."""
    raw = (text or "").strip()
    if not raw:
        return ExpressionResult(valid=False, error="Expression is empty")

    name = extract_channel_name(raw)
    if name is not None:
        ok, why = validate_channel_name(name)
        if not ok:
            return ExpressionResult(valid=False, error=why)
    body = extract_math_expression(raw)

    internal = convert_latex(body)
    try:
        compile_expression(internal)
    except ValidationFailure as e:
        _LOG.debug("rejected expression %r: %s", internal, e.message)
        return ExpressionResult(valid=False, error=e.message)
    return ExpressionResult(valid=True, name=name, internal=internal)
