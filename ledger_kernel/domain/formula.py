"""
Restricted formula language for DERIVED accrual rules.

Formulas compute a template line's amount from ledger balances.  They are
parsed with ``ast.parse(mode="eval")`` and checked against a fixed node set
before evaluation; nothing is ever passed to ``eval``.

Allowed:
  - Arithmetic: +, -, *, / and unary minus
  - Numeric literals (parsed from source text as Decimal, never float)
  - Functions: balance("ACCOUNT_CODE"), abs(x), round(x[, places])

Semantics:
  - balance(code) is the account's posted activity in the target period,
    in its normal-balance sign.
  - Arithmetic is exact Decimal arithmetic (division at 28 digits).
  - round() is the only rounding.  A result finer than one minor unit
    without an explicit round() is an error, not silently rounded.

Rejected:
  - any other name, call, attribute, comparison, subscript or lambda
"""

import ast
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable

from ledger_kernel.domain.amounts import MINOR_UNIT_EXPONENT
from ledger_kernel.exceptions import FormulaError

ALLOWED_FUNCTIONS: frozenset[str] = frozenset({"balance", "abs", "round"})

_BIN_OPS = (ast.Add, ast.Sub, ast.Mult, ast.Div)


@dataclass(frozen=True)
class FormulaASTError:
    """A validation error found in a formula."""

    expression: str
    message: str
    node_type: str = ""


def validate_formula(expression: str) -> list[FormulaASTError]:
    """Validate a formula against the restricted AST.

    Returns a list of errors.  Empty list means the formula is valid.
    """
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        return [FormulaASTError(expression, f"Syntax error: {e.msg}")]

    errors: list[FormulaASTError] = []
    _validate_node(tree.body, expression, errors)
    return errors


def _validate_node(node: ast.AST, expression: str, errors: list[FormulaASTError]) -> None:
    if isinstance(node, ast.BinOp):
        if not isinstance(node.op, _BIN_OPS):
            errors.append(FormulaASTError(
                expression,
                f"Disallowed binary operator: {type(node.op).__name__}",
                type(node.op).__name__,
            ))
        _validate_node(node.left, expression, errors)
        _validate_node(node.right, expression, errors)

    elif isinstance(node, ast.UnaryOp):
        if not isinstance(node.op, (ast.USub, ast.UAdd)):
            errors.append(FormulaASTError(
                expression,
                f"Disallowed unary operator: {type(node.op).__name__}",
                type(node.op).__name__,
            ))
        _validate_node(node.operand, expression, errors)

    elif isinstance(node, ast.Call):
        name = node.func.id if isinstance(node.func, ast.Name) else None
        if name not in ALLOWED_FUNCTIONS or node.keywords:
            errors.append(FormulaASTError(
                expression, f"Disallowed function call: {ast.unparse(node.func)}", "Call",
            ))
            return
        if name == "balance":
            if len(node.args) != 1 or not (
                isinstance(node.args[0], ast.Constant) and isinstance(node.args[0].value, str)
            ):
                errors.append(FormulaASTError(
                    expression, "balance() takes one account code string", "Call",
                ))
            return
        if name == "abs" and len(node.args) != 1:
            errors.append(FormulaASTError(expression, "abs() takes one argument", "Call"))
        if name == "round":
            if len(node.args) not in (1, 2):
                errors.append(FormulaASTError(
                    expression, "round() takes one or two arguments", "Call",
                ))
            elif len(node.args) == 2 and not (
                isinstance(node.args[1], ast.Constant)
                and type(node.args[1].value) is int
                and 0 <= node.args[1].value <= MINOR_UNIT_EXPONENT
            ):
                errors.append(FormulaASTError(
                    expression,
                    f"round() places must be an integer 0..{MINOR_UNIT_EXPONENT}",
                    "Call",
                ))
        for arg in node.args[:1]:
            _validate_node(arg, expression, errors)

    elif isinstance(node, ast.Constant):
        if type(node.value) not in (int, float):
            errors.append(FormulaASTError(
                expression,
                f"Disallowed constant type: {type(node.value).__name__}",
                "Constant",
            ))

    else:
        errors.append(FormulaASTError(
            expression,
            f"Disallowed AST node type: {type(node).__name__}",
            type(node).__name__,
        ))


def evaluate_formula(
    expression: str,
    balance_of: Callable[[str], Decimal],
) -> Decimal:
    """
    Evaluate a validated formula.

    Args:
        expression: Formula source.
        balance_of: Resolves an account code to its balance.

    Raises:
        FormulaError: invalid formula or arithmetic failure.
    """
    errors = validate_formula(expression)
    if errors:
        raise FormulaError(expression, errors[0].message)
    tree = ast.parse(expression, mode="eval")
    try:
        return _eval(tree.body, expression, balance_of)
    except ArithmeticError as e:
        raise FormulaError(expression, f"arithmetic error: {e}") from e


def _eval(node: ast.AST, expression: str, balance_of) -> Decimal:
    if isinstance(node, ast.Constant):
        # Source text keeps 0.05 exact; the float in node.value would not.
        return Decimal(ast.get_source_segment(expression, node))

    if isinstance(node, ast.UnaryOp):
        operand = _eval(node.operand, expression, balance_of)
        return -operand if isinstance(node.op, ast.USub) else operand

    if isinstance(node, ast.BinOp):
        left = _eval(node.left, expression, balance_of)
        right = _eval(node.right, expression, balance_of)
        if isinstance(node.op, ast.Add):
            return left + right
        if isinstance(node.op, ast.Sub):
            return left - right
        if isinstance(node.op, ast.Mult):
            return left * right
        return left / right

    # ast.Call, the only remaining validated node
    name = node.func.id
    if name == "balance":
        return balance_of(node.args[0].value)
    value = _eval(node.args[0], expression, balance_of)
    if name == "abs":
        return abs(value)
    places = node.args[1].value if len(node.args) == 2 else MINOR_UNIT_EXPONENT
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def referenced_accounts(expression: str) -> frozenset[str]:
    """Account codes referenced through balance() calls."""
    tree = ast.parse(expression, mode="eval")
    return frozenset(
        n.args[0].value
        for n in ast.walk(tree)
        if isinstance(n, ast.Call)
        and isinstance(n.func, ast.Name)
        and n.func.id == "balance"
        and n.args
        and isinstance(n.args[0], ast.Constant)
    )
