"""Selectors for the fiscal kernel (read side)."""

from fiscal_kernel.selectors.audit_selector import AuditSelector
from fiscal_kernel.selectors.base import BaseSelector
from fiscal_kernel.selectors.catalog_selector import CatalogSelector
from fiscal_kernel.selectors.ledger_selector import LedgerSelector
from fiscal_kernel.selectors.obligation_selector import ObligationSelector
from fiscal_kernel.selectors.rule_selector import RuleSelector
from fiscal_kernel.selectors.setting_selector import SettingSelector

__all__ = [
    "AuditSelector",
    "BaseSelector",
    "CatalogSelector",
    "LedgerSelector",
    "ObligationSelector",
    "RuleSelector",
    "SettingSelector",
]
