"""
Values -- enumerations and small value objects of the fiscal domain.

Responsibility:
    Closed vocabularies (operations, calc methods, statuses), the ledger
    period value object, the audit actor, jurisdiction (UF) codes and the
    monetary rounding rule.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - TaxPeriod month is 1..12 and year is 1900..9999.
    - Money amounts are rounded exactly once, half-up, to 2 places
      (``quantize_money``), at the point a tax line amount is produced.
    - UF codes are validated against the closed set of Brazilian states.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

from fiscal_kernel.exceptions import ValidationError

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


class Operation(str, Enum):
    """Commercial operation kind."""

    VENDA = "venda"
    COMPRA = "compra"
    PRESTACAO_SERVICO = "prestacao_servico"

    @property
    def is_debit(self) -> bool:
        """Sales and services owe tax (debit); purchases generate credit."""
        return self is not Operation.COMPRA


class CalcMethod(str, Enum):
    """Calculation method family of a tax rule."""

    PERCENTUAL = "percentual"
    VALOR_FIXO = "valor_fixo"
    ISENTO = "isento"
    NAO_INCIDENCIA = "nao_incidencia"


class LedgerStatus(str, Enum):
    """Ledger lifecycle: ABERTO <-> FECHADO via explicit close/reopen."""

    ABERTO = "aberto"
    FECHADO = "fechado"


class PostingSide(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class ObligationStatus(str, Enum):
    """
    Accessory obligation lifecycle.

    RASCUNHO -> GERADO -> VALIDADO -> ENVIADO, ERRO from any non-terminal
    state, ERRO -> RASCUNHO on retry.  ENVIADO is terminal.
    """

    RASCUNHO = "rascunho"
    GERADO = "gerado"
    VALIDADO = "validado"
    ENVIADO = "enviado"
    ERRO = "erro"


class Periodicity(str, Enum):
    MENSAL = "mensal"
    TRIMESTRAL = "trimestral"
    ANUAL = "anual"

    def allows_month(self, month: int) -> bool:
        if self is Periodicity.TRIMESTRAL:
            return month in (3, 6, 9, 12)
        if self is Periodicity.ANUAL:
            return month == 12
        return True


class Jurisdiction(str, Enum):
    FEDERAL = "federal"
    ESTADUAL = "estadual"
    MUNICIPAL = "municipal"


class ClassificationType(str, Enum):
    PRODUCT = "product"
    SERVICE = "service"


class AuditOperation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


# Brazilian federative units
UF_CODES: frozenset[str] = frozenset({
    "AC", "AL", "AP", "AM", "BA", "CE", "DF", "ES", "GO", "MA", "MT", "MS",
    "MG", "PA", "PB", "PR", "PE", "PI", "RJ", "RN", "RS", "RO", "RR", "SC",
    "SP", "SE", "TO",
})


def normalize_uf(value: str | None, field: str = "uf") -> str | None:
    """Return the upper-cased UF code, None for empty input.

    Raises:
        ValidationError: if the value is not a known UF.
    """
    if value is None:
        return None
    uf = value.strip().upper()
    if not uf:
        return None
    if uf not in UF_CODES:
        raise ValidationError(f"unknown UF '{value}'", field=field)
    return uf


def to_decimal(value: Any, field: str) -> Decimal:
    """Convert int/str/Decimal to Decimal. Floats are rejected."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or isinstance(value, float):
        raise ValidationError("must be a Decimal, int or numeric string", field=field)
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation:
            raise ValidationError(f"not a number: {value!r}", field=field)
    else:
        raise ValidationError(f"unsupported numeric type {type(value).__name__}", field=field)
    if not result.is_finite():
        raise ValidationError("must be finite", field=field)
    return result


def quantize_money(value: Decimal) -> Decimal:
    """Round a monetary value to 2 decimal places, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True, order=True)
class TaxPeriod:
    """A monthly ledger period."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValidationError(f"month must be 1..12, got {self.month}", field="period_month")
        if not 1900 <= self.year <= 9999:
            raise ValidationError(f"year out of range: {self.year}", field="period_year")

    @classmethod
    def of(cls, month: int, year: int) -> "TaxPeriod":
        return cls(year=year, month=month)

    @property
    def code(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def __str__(self) -> str:
        return self.code


@dataclass(frozen=True)
class AuditActor:
    """
    Who performed a mutation, as reported by the calling layer.

    The engine does not authenticate; it records what it is told.
    """

    user_id: str
    ip_address: str | None = None
    user_agent: str | None = None

    def __post_init__(self) -> None:
        if not self.user_id:
            raise ValidationError("user_id is required", field="user_id")
