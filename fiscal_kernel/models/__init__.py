"""Domain models for the fiscal kernel."""

from fiscal_kernel.models.audit_log import FiscalAuditLogEntry
from fiscal_kernel.models.calculation import TaxCalculationRecord
from fiscal_kernel.models.catalog import (
    FiscalClassification,
    ObligationKind,
    TaxRegime,
    TaxType,
)
from fiscal_kernel.models.company_setting import CompanyFiscalSetting
from fiscal_kernel.models.ledger import TaxLedger, TaxLedgerPosting
from fiscal_kernel.models.obligation import VALID_TRANSITIONS, Obligation
from fiscal_kernel.models.tax_rule import CALCULATION_FIELDS, TaxRule

__all__ = [
    "CALCULATION_FIELDS",
    "CompanyFiscalSetting",
    "FiscalAuditLogEntry",
    "FiscalClassification",
    "Obligation",
    "ObligationKind",
    "TaxCalculationRecord",
    "TaxLedger",
    "TaxLedgerPosting",
    "TaxRegime",
    "TaxRule",
    "TaxType",
    "VALID_TRANSITIONS",
]
