"""Restricted expression language used by the ``map`` and ``filter`` nodes.

Expressions are parsed with :mod:`ast` and walked by a small interpreter that
only knows a whitelisted set of node types, so user text never reaches
``eval``/``exec``. Attribute access on mappings reads keys, which lets
editor-style expressions such as ``item.age > 18`` work on parsed JSON.
"""

from __future__ import annotations

import ast
import operator
from typing import Any, Callable, Dict, Mapping

from .errors import FlowError


class ExpressionError(FlowError):
    """Raised for syntax errors, disallowed constructs and evaluation failures."""


_BINARY_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}

_COMPARE_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "lower": lambda value: str(value).lower(),
    "upper": lambda value: str(value).upper(),
}

CONSTANTS: Dict[str, Any] = {"true": True, "false": False, "null": None}

# Large exponents or operands would let a single expression stall the run.
MAX_POWER = 10_000
MAX_INT_BITS = 100_000
MAX_SEQUENCE_LENGTH = 1_000_000


def _power(base: Any, exponent: Any) -> Any:
    if isinstance(exponent, (int, float)) and abs(exponent) > MAX_POWER:
        raise ExpressionError(f"Exponent {exponent} exceeds limit of {MAX_POWER}")
    if isinstance(base, int) and isinstance(exponent, int) and exponent > 0:
        if abs(base).bit_length() * exponent > MAX_INT_BITS:
            raise ExpressionError(f"Result of power exceeds limit of {MAX_INT_BITS} bits")
    return operator.pow(base, exponent)


def _multiply(left: Any, right: Any) -> Any:
    for sequence, count in ((left, right), (right, left)):
        if isinstance(sequence, (str, list, tuple)) and isinstance(count, int):
            if len(sequence) * count > MAX_SEQUENCE_LENGTH:
                raise ExpressionError(f"Repeated sequence exceeds limit of {MAX_SEQUENCE_LENGTH} items")
            return operator.mul(left, right)
    if isinstance(left, int) and isinstance(right, int):
        if abs(left).bit_length() + abs(right).bit_length() > MAX_INT_BITS:
            raise ExpressionError(f"Result of product exceeds limit of {MAX_INT_BITS} bits")
    return operator.mul(left, right)


class Expression:
    """A parsed, validated expression that can be evaluated repeatedly."""

    def __init__(self, source: str) -> None:
        self.source = source
        try:
            tree = ast.parse(source.strip() or "None", mode="eval")
        except SyntaxError as exc:
            raise ExpressionError(f"Invalid expression '{source}': {exc.msg}") from None
        self._check(tree.body)
        self._tree = tree.body

    def _check(self, node: ast.AST) -> None:
        allowed = (
            ast.Constant, ast.Name, ast.Load, ast.Attribute, ast.Subscript, ast.Slice,
            ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare, ast.IfExp, ast.Call,
            ast.List, ast.Tuple, ast.Dict, ast.And, ast.Or,
        )
        allowed += tuple(_BINARY_OPS) + tuple(_UNARY_OPS) + tuple(_COMPARE_OPS)
        for child in ast.walk(node):
            if not isinstance(child, allowed):
                raise ExpressionError(
                    f"Unsupported syntax in expression '{self.source}': {type(child).__name__}"
                )
            if isinstance(child, ast.Attribute) and child.attr.startswith("_"):
                raise ExpressionError(f"Access to private attribute '{child.attr}' is not allowed")
            if isinstance(child, ast.Call):
                if not isinstance(child.func, ast.Name) or child.func.id not in FUNCTIONS:
                    raise ExpressionError(f"Call not allowed in expression '{self.source}'")
                if child.keywords:
                    raise ExpressionError("Keyword arguments are not supported")

    def evaluate(self, variables: Mapping[str, Any]) -> Any:
        try:
            return self._eval(self._tree, variables)
        except ExpressionError:
            raise
        except Exception as exc:
            raise ExpressionError(f"Failed to evaluate '{self.source}': {exc}") from exc

    def _eval(self, node: ast.AST, env: Mapping[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id in env:
                return env[node.id]
            if node.id in CONSTANTS:
                return CONSTANTS[node.id]
            raise ExpressionError(f"Unknown name '{node.id}'")
        if isinstance(node, ast.Attribute):
            target = self._eval(node.value, env)
            if isinstance(target, Mapping):
                return target.get(node.attr)
            if isinstance(target, (list, tuple, str)) and node.attr == "length":
                return len(target)
            raise ExpressionError(f"Cannot read '{node.attr}' of {type(target).__name__}")
        if isinstance(node, ast.Subscript):
            target = self._eval(node.value, env)
            key = self._eval(node.slice, env)
            return target[key]
        if isinstance(node, ast.Slice):
            return slice(
                self._eval(node.lower, env) if node.lower else None,
                self._eval(node.upper, env) if node.upper else None,
                self._eval(node.step, env) if node.step else None,
            )
        if isinstance(node, ast.BinOp):
            left = self._eval(node.left, env)
            right = self._eval(node.right, env)
            if isinstance(node.op, ast.Pow):
                return _power(left, right)
            if isinstance(node.op, ast.Mult):
                return _multiply(left, right)
            return _BINARY_OPS[type(node.op)](left, right)
        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPS[type(node.op)](self._eval(node.operand, env))
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                value: Any = True
                for operand in node.values:
                    value = self._eval(operand, env)
                    if not value:
                        return value
                return value
            value = False
            for operand in node.values:
                value = self._eval(operand, env)
                if value:
                    return value
            return value
        if isinstance(node, ast.Compare):
            left = self._eval(node.left, env)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, env)
                if not _COMPARE_OPS[type(op)](left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.IfExp):
            branch = node.body if self._eval(node.test, env) else node.orelse
            return self._eval(branch, env)
        if isinstance(node, ast.Call):
            fn = FUNCTIONS[node.func.id]  # type: ignore[attr-defined]
            return fn(*(self._eval(arg, env) for arg in node.args))
        if isinstance(node, ast.List):
            return [self._eval(elt, env) for elt in node.elts]
        if isinstance(node, ast.Tuple):
            return tuple(self._eval(elt, env) for elt in node.elts)
        if isinstance(node, ast.Dict):
            return {
                self._eval(k, env): self._eval(v, env)
                for k, v in zip(node.keys, node.values)
                if k is not None
            }
        raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"


def compile_expression(source: str) -> Expression:
    return Expression(source)
