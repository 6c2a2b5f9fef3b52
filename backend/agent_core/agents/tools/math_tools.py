"""
Math tools for calculations.

The calculator walks the expression's AST instead of calling eval, so only
numbers, arithmetic operators and a fixed set of math functions are reachable.
"""

import ast
import math
import operator
from typing import Callable, Union

from langchain_core.tools import tool

from agent_core.agents.tools.base import LangChainTool
from agent_core.core.errors import ToolError, ToolErrorKind

Number = Union[int, float]

MAX_EXPONENT = 1000
MAX_INT_BITS = 10_000
MAX_FACTORIAL = 1000


def _factorial(n: Number) -> int:
    if isinstance(n, int) and n > MAX_FACTORIAL:
        raise ValueError(f"factorial argument larger than {MAX_FACTORIAL}")
    return math.factorial(n)


BINARY_OPERATORS: dict[type, Callable[[Number, Number], Number]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

FUNCTIONS: dict[str, Callable[..., Number]] = {
    'abs': abs,
    'round': round,
    'min': min,
    'max': max,
    'sqrt': math.sqrt,
    'sin': math.sin,
    'cos': math.cos,
    'tan': math.tan,
    'log': math.log,
    'log10': math.log10,
    'log2': math.log2,
    'exp': math.exp,
    'floor': math.floor,
    'ceil': math.ceil,
    'factorial': _factorial,
}

CONSTANTS: dict[str, float] = {
    'pi': math.pi,
    'e': math.e,
}


def evaluate_expression(expression: str) -> Number:
    """
    Evaluate an arithmetic expression.

    Raises:
        ValueError: The expression uses anything outside the allowed grammar
        ZeroDivisionError: Division or modulo by zero
    """
    try:
        tree = ast.parse(expression.replace("^", "**"), mode="eval")
    except SyntaxError as e:
        raise ValueError(f"Invalid expression: {e.msg}") from e
    return _eval_node(tree.body)


def _eval_node(node: ast.AST) -> Number:
    if isinstance(node, ast.Constant):
        if isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
            return node.value
        raise ValueError("Only numeric constants are allowed")

    if isinstance(node, ast.Name):
        if node.id in CONSTANTS:
            return CONSTANTS[node.id]
        raise ValueError(f"Unknown name '{node.id}'")

    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.UAdd, ast.USub)):
        operand = _eval_node(node.operand)
        return operand if isinstance(node.op, ast.UAdd) else -operand

    if isinstance(node, ast.BinOp) and type(node.op) in BINARY_OPERATORS:
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, ast.Pow):
            if abs(right) > MAX_EXPONENT:
                raise ValueError(f"Exponent larger than {MAX_EXPONENT}")
            # bound the result size before computing it
            if isinstance(left, int) and isinstance(right, int) and abs(left).bit_length() * right > MAX_INT_BITS:
                raise ValueError(f"Result larger than {MAX_INT_BITS} bits")
        return _check_size(BINARY_OPERATORS[type(node.op)](left, right))

    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
        func = FUNCTIONS.get(node.func.id)
        if func is None or node.keywords:
            raise ValueError(f"Unsupported function '{node.func.id}'")
        return _check_size(func(*(_eval_node(arg) for arg in node.args)))

    raise ValueError(f"Unsupported syntax: {type(node).__name__}")


def _check_size(value: Number) -> Number:
    if isinstance(value, int) and value.bit_length() > MAX_INT_BITS:
        raise ValueError(f"Result larger than {MAX_INT_BITS} bits")
    return value


def format_number(value: Number) -> str:
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return f"{value:.10g}"
    return str(value)


@tool
def calculator(expression: str) -> str:
    """
    Evaluate a mathematical expression safely.

    Supports basic arithmetic (+, -, *, /, //, %, **), parentheses,
    and common math functions (sqrt, sin, cos, tan, log, exp, abs, round).

    Args:
        expression: Mathematical expression to evaluate (e.g., "2 + 2", "sqrt(16)")
    """
    try:
        return format_number(evaluate_expression(expression))
    except ZeroDivisionError as e:
        raise ToolError(ToolErrorKind.EXECUTION_ERROR, "Division by zero", "calculator") from e
    except (ValueError, TypeError, OverflowError) as e:
        raise ToolError(ToolErrorKind.INVALID_INPUT, str(e), "calculator") from e


def get_math_tools() -> list[LangChainTool]:
    """Get all math tools, wrapped for registration."""
    return [LangChainTool(calculator)]
