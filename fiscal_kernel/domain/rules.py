"""
Rules -- pure representation of a tax rule and its matching semantics.

Responsibility:
    Defines the calculation recipe of a rule as a tagged variant (one
    frozen dataclass per calc method), the wildcard-capable scope of a rule,
    and the pure functions that decide whether a rule applies to a request
    and how specific the match is.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Rules are read from
    the store into ``TaxRuleSnapshot`` objects by the rule selector and
    handed to the resolver in ``fiscal_engines``.

Invariants enforced:
    - A ``percentual`` recipe always carries a rate.
    - A ``valor_fixo`` recipe always carries a fixed amount.
    - A formula recipe always carries a syntactically valid formula; its
      rate/base_reduction are only inputs to the formula.
    - ``base_reduction`` is a percentage in [0, 100]; rates and fixed
      amounts are non-negative.
    - An unset scope field is a wildcard; a set field matches only an equal
      request value.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, ClassVar, Union
from uuid import UUID

from fiscal_kernel.domain.formula import validate_formula
from fiscal_kernel.domain.values import HUNDRED, CalcMethod, Operation, to_decimal
from fiscal_kernel.exceptions import ValidationError

ZERO = Decimal("0")


# =============================================================================
# Calculation recipes
# =============================================================================


@dataclass(frozen=True)
class Percentual:
    """tax = amount * (1 - base_reduction/100) * rate/100"""

    rate: Decimal
    base_reduction: Decimal = ZERO

    method: ClassVar[CalcMethod] = CalcMethod.PERCENTUAL


@dataclass(frozen=True)
class FixedAmount:
    """tax = amount (independent of the operation amount)"""

    amount: Decimal

    method: ClassVar[CalcMethod] = CalcMethod.VALOR_FIXO


@dataclass(frozen=True)
class Exempt:
    """Considered but zero: isento."""

    method: ClassVar[CalcMethod] = CalcMethod.ISENTO


@dataclass(frozen=True)
class NonIncidence:
    """Considered but zero: nao_incidencia."""

    method: ClassVar[CalcMethod] = CalcMethod.NAO_INCIDENCIA


@dataclass(frozen=True)
class Formula:
    """
    Formula mode.

    ``declared`` is the calc method stored on the rule and reported on the
    tax line; the amount comes from evaluating ``expression``.
    """

    expression: str
    declared: CalcMethod
    rate: Decimal | None = None
    base_reduction: Decimal | None = None

    @property
    def method(self) -> CalcMethod:
        return self.declared


CalcRecipe = Union[Percentual, FixedAmount, Exempt, NonIncidence, Formula]

# Calc methods that may opt into formula evaluation
FORMULA_METHODS = frozenset({CalcMethod.PERCENTUAL, CalcMethod.VALOR_FIXO})


def _optional_decimal(value: Any, field: str) -> Decimal | None:
    if value is None:
        return None
    return to_decimal(value, field)


def _check_percentage(value: Decimal | None, field: str) -> None:
    if value is not None and not ZERO <= value <= HUNDRED:
        raise ValidationError("must be between 0 and 100", field=field)


def build_recipe(
    calc_method: CalcMethod | str,
    rate: Any = None,
    base_reduction: Any = None,
    fixed_amount: Any = None,
    formula: str | None = None,
) -> CalcRecipe:
    """
    Build the calculation recipe for a rule, validating required fields.

    Raises:
        ValidationError: unknown calc method, missing rate (percentual),
            missing fixed amount (valor_fixo), out-of-range values, or an
            invalid formula.
    """
    try:
        method = CalcMethod(calc_method)
    except ValueError:
        raise ValidationError(f"unknown calc method '{calc_method}'", field="calc_method")

    rate_d = _optional_decimal(rate, "rate")
    reduction_d = _optional_decimal(base_reduction, "base_reduction")
    fixed_d = _optional_decimal(fixed_amount, "fixed_amount")

    if rate_d is not None and rate_d < ZERO:
        raise ValidationError("must not be negative", field="rate")
    _check_percentage(reduction_d, "base_reduction")
    if fixed_d is not None and fixed_d < ZERO:
        raise ValidationError("must not be negative", field="fixed_amount")

    if formula is not None and formula.strip():
        if method not in FORMULA_METHODS:
            raise ValidationError(
                f"formula is not allowed for calc method '{method.value}'",
                field="formula",
            )
        errors = validate_formula(formula)
        if errors:
            raise ValidationError(
                "; ".join(e.message for e in errors),
                field="formula",
            )
        return Formula(
            expression=formula.strip(),
            declared=method,
            rate=rate_d,
            base_reduction=reduction_d,
        )

    if method is CalcMethod.PERCENTUAL:
        if rate_d is None:
            raise ValidationError("rate is required for calc method 'percentual'", field="rate")
        return Percentual(rate=rate_d, base_reduction=reduction_d or ZERO)

    if method is CalcMethod.VALOR_FIXO:
        if fixed_d is None:
            raise ValidationError(
                "fixed_amount is required for calc method 'valor_fixo'",
                field="fixed_amount",
            )
        return FixedAmount(amount=fixed_d)

    if method is CalcMethod.ISENTO:
        return Exempt()
    return NonIncidence()


# =============================================================================
# Scope matching
# =============================================================================


@dataclass(frozen=True)
class RuleScope:
    """
    The wildcard-capable fields of a rule (or the values of a request).

    On a rule, ``None`` means "any value".  On a request, ``None`` means the
    request does not specify the field; only wildcard rule fields match it.
    """

    origin_uf: str | None = None
    destination_uf: str | None = None
    classification_id: UUID | None = None

    FIELDS: ClassVar[tuple[str, ...]] = ("origin_uf", "destination_uf", "classification_id")


def match_specificity(rule_scope: RuleScope, request_scope: RuleScope) -> int | None:
    """
    Return the number of exactly matched (non-wildcard) fields, or None if
    the rule does not apply to the request.
    """
    exact = 0
    for name in RuleScope.FIELDS:
        rule_value = getattr(rule_scope, name)
        if rule_value is None:
            continue
        if rule_value != getattr(request_scope, name):
            return None
        exact += 1
    return exact


# =============================================================================
# Rule snapshot
# =============================================================================


@dataclass(frozen=True)
class TaxRuleSnapshot:
    """
    Immutable copy of a stored rule, taken when resolution starts.

    Later writes to the rule do not affect a snapshot already taken.
    """

    id: UUID
    regime_id: UUID
    tax_type_id: UUID
    tax_type_code: str
    tax_type_name: str
    operation: Operation
    scope: RuleScope
    recipe: CalcRecipe
    priority: int
    valid_from: date
    valid_to: date | None = None
    is_active: bool = True

    @property
    def calc_method(self) -> CalcMethod:
        return self.recipe.method

    def is_valid_on(self, on: date) -> bool:
        """Validity window is inclusive on both ends; open end allowed."""
        if on < self.valid_from:
            return False
        return self.valid_to is None or on <= self.valid_to
