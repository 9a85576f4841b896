"""PB (commission) calculation for contracts.

Products either carry a formula over contract variables and product
constants, a fixed amount, or a percentage of the contract value. Formulas
are plain arithmetic: numbers, ``+ - * /`` and parentheses once placeholders
such as ``{valor_total}`` have been substituted.
"""

from __future__ import annotations

import ast
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from backoffice.contracts.models import Product


logger = logging.getLogger("backoffice.contracts.commission")

CONTRACT_VARIABLES = ("valor_total", "valor_mensal", "credito", "premio_mensal", "valor_investido")
PRODUCT_CONSTANTS = ("comissao_pct", "taxa_admin_pct", "fator_multiplicador")

_PLACEHOLDER_RE = re.compile(r"\{([a-zA-Z_][a-zA-Z0-9_]*)\}")
_ALLOWED_CHARS_RE = re.compile(r"^[\d\s+\-*/().]+$")
CENTS = Decimal("0.01")


class CommissionFormulaError(ValueError):
    pass


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def build_formula_variables(
    contract_value: Decimal,
    custom_data: Mapping[str, Any] | None,
    constants: Mapping[str, Any] | None,
) -> dict[str, Decimal]:
    variables: dict[str, Decimal] = {"valor_total": Decimal(contract_value)}
    for source, names in ((custom_data or {}, CONTRACT_VARIABLES), (constants or {}, PRODUCT_CONSTANTS)):
        for name in names:
            parsed = _to_decimal(source.get(name))
            if parsed is not None:
                variables[name] = parsed
    return variables


def _substitute(formula: str, variables: Mapping[str, Decimal]) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in variables:
            raise CommissionFormulaError(f"unknown formula variable: {name}")
        return f"({format(variables[name], 'f')})"

    return _PLACEHOLDER_RE.sub(replace, formula)


def _eval_node(node: ast.AST) -> Decimal:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return Decimal(str(node.value))
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.UAdd, ast.USub)):
        operand = _eval_node(node.operand)
        return operand if isinstance(node.op, ast.UAdd) else -operand
    if isinstance(node, ast.BinOp):
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, ast.Add):
            return left + right
        if isinstance(node.op, ast.Sub):
            return left - right
        if isinstance(node.op, ast.Mult):
            return left * right
        if isinstance(node.op, ast.Div):
            if right == 0:
                raise CommissionFormulaError("division by zero in formula")
            return left / right
    raise CommissionFormulaError("unsupported formula expression")


def evaluate_formula(formula: str, variables: Mapping[str, Decimal]) -> Decimal:
    expression = _substitute(formula, variables)
    if not expression.strip() or not _ALLOWED_CHARS_RE.match(expression):
        raise CommissionFormulaError("formula contains invalid characters")
    if "**" in expression or "//" in expression:
        raise CommissionFormulaError("unsupported formula operator")

    try:
        tree = ast.parse(expression, mode="eval")
    except (SyntaxError, RecursionError, MemoryError) as exc:
        raise CommissionFormulaError("invalid formula") from exc

    try:
        return _eval_node(tree)
    except (ArithmeticError, RecursionError) as exc:
        raise CommissionFormulaError("formula could not be evaluated") from exc


def _round_cents(value: Decimal) -> Decimal:
    try:
        return value.quantize(CENTS)
    except ArithmeticError as exc:
        raise CommissionFormulaError(f"commission value out of range: {value}") from exc


def calculate_commission(
    product: Product | None,
    contract_value: Decimal,
    custom_data: Mapping[str, Any] | None,
    *,
    fallback_rate: float,
) -> Decimal:
    value = Decimal(contract_value or 0)

    if product is not None and product.pb_formula:
        variables = build_formula_variables(value, custom_data, product.pb_constants)
        return _round_cents(evaluate_formula(product.pb_formula, variables))

    if product is not None and product.pb_value is not None:
        if product.pb_calculation_type == "fixed":
            return _round_cents(Decimal(product.pb_value))
        if product.pb_calculation_type == "percentage":
            return _round_cents(value * Decimal(product.pb_value))

    logger.warning(
        "commission_fallback_rate_applied",
        extra={"error": f"product {getattr(product, 'id', None)} has no PB configuration"},
    )
    return _round_cents(value * Decimal(str(fallback_rate)))
