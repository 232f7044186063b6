"""
FastMCP Calculator

Development tool server for exercising the chat tool loop end to end.
Serves streamable HTTP at http://localhost:9000/mcp; point an entry of
`mcp.servers` in the config at that URL.
"""

from __future__ import annotations

import ast
import logging
import operator
from typing import Any

from mcp.server.fastmcp import FastMCP

TOOL_TOGGLES = {
    "calc": True,
    "add": True,
    "multiply": True,
}

_BINARY_OPS: dict[type[ast.operator], Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS: dict[type[ast.unaryop], Any] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

mcp = FastMCP("Calc", port=9000)


def evaluate(expression: str) -> float | int:
    """Evaluate a plain arithmetic expression; names, calls and attributes are rejected."""

    def _eval(node: ast.AST) -> float | int:
        if isinstance(node, ast.Expression):
            return _eval(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, int | float):
            return node.value
        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
            return _BINARY_OPS[type(node.op)](_eval(node.left), _eval(node.right))
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
            return _UNARY_OPS[type(node.op)](_eval(node.operand))
        raise ValueError(f"Unsupported expression: {ast.dump(node)}")

    return _eval(ast.parse(expression, mode="eval"))


if TOOL_TOGGLES["calc"]:

    @mcp.tool()
    def calc(expression: str) -> str:
        """Evaluate an arithmetic expression such as '2 * (3 + 4)'"""
        return str(evaluate(expression))


if TOOL_TOGGLES["add"]:

    @mcp.tool()
    def add(a: float, b: float) -> float:
        """Add two numbers"""
        return a + b


if TOOL_TOGGLES["multiply"]:

    @mcp.tool()
    def multiply(a: float, b: float) -> float:
        """Multiply two numbers"""
        return a * b


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    enabled = [k for k, v in TOOL_TOGGLES.items() if v]
    logging.info("Calc server starting with tools: %s", ", ".join(enabled))
    mcp.run(transport="streamable-http")
