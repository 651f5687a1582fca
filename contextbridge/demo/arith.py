"""Arithmetic evaluation over a whitelisted expression AST. No host code runs."""

import ast
import math
import operator
from typing import Callable, Dict, Type, Union

Number = Union[int, float]

MAX_EXPONENT = 1000
MAX_LENGTH = 500
MAX_RESULT_BITS = 10000


class ExpressionError(ValueError):
    """Raised for expressions that are malformed or not allowed."""


_BINARY: Dict[Type[ast.operator], Callable[[Number, Number], Number]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY: Dict[Type[ast.unaryop], Callable[[Number], Number]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def _check_bits(bits: int) -> None:
    if bits > MAX_RESULT_BITS:
        raise ExpressionError("result too large")


def _checked(value: Number) -> Number:
    # complex results come from fractional powers of negatives
    if isinstance(value, complex):
        raise ExpressionError("result is not a real number")
    if isinstance(value, float) and not math.isfinite(value):
        raise ExpressionError("result out of range")
    if isinstance(value, int):
        _check_bits(value.bit_length())
    return value


def _eval(node: ast.AST) -> Number:
    if isinstance(node, ast.Expression):
        return _eval(node.body)

    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise ExpressionError(f"unsupported literal: {node.value!r}")
        return _checked(node.value)

    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY:
        return _UNARY[type(node.op)](_eval(node.operand))

    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY:
        left = _eval(node.left)
        right = _eval(node.right)
        if isinstance(node.op, ast.Pow):
            if abs(right) > MAX_EXPONENT:
                raise ExpressionError(f"exponent too large: {right}")
            if isinstance(left, int) and isinstance(right, int) and right > 0:
                _check_bits(left.bit_length() * right)
        elif isinstance(node.op, ast.Mult) and isinstance(left, int) and isinstance(right, int):
            _check_bits(left.bit_length() + right.bit_length())
        try:
            result = _BINARY[type(node.op)](left, right)
        except ZeroDivisionError:
            raise ExpressionError("division by zero")
        except (OverflowError, ValueError) as exc:
            raise ExpressionError(f"result out of range: {exc}")
        return _checked(result)

    raise ExpressionError(f"unsupported syntax: {type(node).__name__}")


def evaluate(expression: str) -> Number:
    """
    Evaluate an arithmetic expression such as ``"15 + 25"`` or ``"2 ** (3 - 1)"``.

    Only numeric literals, parentheses, unary ``+``/``-`` and the binary
    operators ``+ - * / // % **`` are accepted.
    """
    if len(expression) > MAX_LENGTH:
        raise ExpressionError("expression too long")
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"invalid expression: {exc.msg}")
    return _eval(tree)


def format_number(value: Number) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
