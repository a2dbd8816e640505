"""
Restricted arithmetic for rule formulas.

A formula is evaluated over a fixed set of named variables and must not
reach any external state.  This module parses the expression with
``ast`` in ``eval`` mode, validates every node against a fixed operator
set, and evaluates the tree itself with Decimal arithmetic (never
``eval``).

Allowed:
  - Arithmetic: +, -, *, /, unary +/-
  - Names: amount, base_reduction, rate
  - Literals: int and decimal numbers
  - Functions: abs(), min(), max()

Rejected:
  - attribute access, subscripts, comparisons, boolean logic, **, //, %,
    any other name or call, strings, lambda, comprehensions
"""

import ast
from dataclasses import dataclass
from decimal import Decimal, DivisionByZero, InvalidOperation, localcontext
from typing import Mapping

from fiscal_kernel.exceptions import FormulaEvaluationError

FORMULA_VARIABLES: frozenset[str] = frozenset({"amount", "base_reduction", "rate"})

ALLOWED_FUNCTIONS: frozenset[str] = frozenset({"abs", "min", "max"})

MAX_FORMULA_LENGTH = 500

_BINARY_OPS = (ast.Add, ast.Sub, ast.Mult, ast.Div)
_UNARY_OPS = (ast.UAdd, ast.USub)


@dataclass(frozen=True)
class FormulaError:
    """A validation error found in a formula."""

    expression: str
    message: str
    node_type: str = ""


def validate_formula(expression: str) -> list[FormulaError]:
    """Validate a formula against the restricted AST.

    Returns a list of errors. Empty list means the formula is valid.
    """
    if not expression or not expression.strip():
        return [FormulaError(expression=expression, message="Formula is empty")]
    if len(expression) > MAX_FORMULA_LENGTH:
        return [
            FormulaError(
                expression=expression,
                message=f"Formula longer than {MAX_FORMULA_LENGTH} characters",
            )
        ]

    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        return [FormulaError(expression=expression, message=f"Syntax error: {e.msg}")]
    except ValueError as e:
        # NUL bytes on older interpreters
        return [FormulaError(expression=expression, message=f"Syntax error: {e}")]

    errors: list[FormulaError] = []
    _validate_node(tree.body, expression, errors)
    return errors


def _validate_node(node: ast.AST, expression: str, errors: list[FormulaError]) -> None:
    if isinstance(node, ast.BinOp):
        if isinstance(node.op, _BINARY_OPS):
            _validate_node(node.left, expression, errors)
            _validate_node(node.right, expression, errors)
        else:
            errors.append(
                FormulaError(
                    expression=expression,
                    message=f"Disallowed binary operator: {type(node.op).__name__}",
                    node_type=type(node.op).__name__,
                )
            )

    elif isinstance(node, ast.UnaryOp):
        if isinstance(node.op, _UNARY_OPS):
            _validate_node(node.operand, expression, errors)
        else:
            errors.append(
                FormulaError(
                    expression=expression,
                    message=f"Disallowed unary operator: {type(node.op).__name__}",
                    node_type=type(node.op).__name__,
                )
            )

    elif isinstance(node, ast.Call):
        if (
            isinstance(node.func, ast.Name)
            and node.func.id in ALLOWED_FUNCTIONS
            and not node.keywords
            and node.args
        ):
            if node.func.id == "abs" and len(node.args) != 1:
                errors.append(
                    FormulaError(expression=expression, message="abs() takes one argument", node_type="Call")
                )
            for arg in node.args:
                _validate_node(arg, expression, errors)
        else:
            errors.append(
                FormulaError(
                    expression=expression,
                    message=f"Disallowed function call: {ast.unparse(node.func)}",
                    node_type="Call",
                )
            )

    elif isinstance(node, ast.Name):
        if node.id not in FORMULA_VARIABLES:
            errors.append(
                FormulaError(
                    expression=expression,
                    message=(
                        f"Unknown variable: {node.id}. "
                        f"Only {', '.join(sorted(FORMULA_VARIABLES))} are available."
                    ),
                    node_type="Name",
                )
            )

    elif isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            errors.append(
                FormulaError(
                    expression=expression,
                    message=f"Disallowed constant: {node.value!r}",
                    node_type="Constant",
                )
            )

    else:
        errors.append(
            FormulaError(
                expression=expression,
                message=f"Disallowed expression: {type(node).__name__}",
                node_type=type(node).__name__,
            )
        )


def evaluate_formula(expression: str, variables: Mapping[str, Decimal]) -> Decimal:
    """
    Evaluate a formula with Decimal arithmetic.

    Raises:
        FormulaEvaluationError: invalid formula, missing variable,
            division by zero, or a non-finite/negative result.
    """
    errors = validate_formula(expression)
    if errors:
        raise FormulaEvaluationError(expression, "; ".join(e.message for e in errors))

    missing = FORMULA_VARIABLES - set(variables)
    if missing:
        raise FormulaEvaluationError(expression, f"missing variables: {', '.join(sorted(missing))}")

    tree = ast.parse(expression.strip(), mode="eval")
    with localcontext() as ctx:
        ctx.traps[DivisionByZero] = True
        ctx.traps[InvalidOperation] = True
        try:
            result = _eval_node(tree.body, variables)
        except (DivisionByZero, InvalidOperation, ZeroDivisionError) as exc:
            raise FormulaEvaluationError(expression, f"arithmetic error: {type(exc).__name__}")

    if not result.is_finite():
        raise FormulaEvaluationError(expression, "result is not finite")
    if result < 0:
        raise FormulaEvaluationError(expression, f"result is negative ({result})")
    return result


def _eval_node(node: ast.AST, variables: Mapping[str, Decimal]) -> Decimal:
    if isinstance(node, ast.BinOp):
        left = _eval_node(node.left, variables)
        right = _eval_node(node.right, variables)
        if isinstance(node.op, ast.Add):
            return left + right
        if isinstance(node.op, ast.Sub):
            return left - right
        if isinstance(node.op, ast.Mult):
            return left * right
        return left / right

    if isinstance(node, ast.UnaryOp):
        operand = _eval_node(node.operand, variables)
        return -operand if isinstance(node.op, ast.USub) else operand

    if isinstance(node, ast.Call):
        args = [_eval_node(arg, variables) for arg in node.args]
        if node.func.id == "abs":
            return abs(args[0])
        if node.func.id == "min":
            return min(args)
        return max(args)

    if isinstance(node, ast.Name):
        return Decimal(variables[node.id])

    # Constant: str() keeps the literal as written (0.1 stays 0.1)
    return Decimal(str(node.value))
