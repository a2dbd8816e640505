"""Services for the fiscal kernel (write side)."""

from fiscal_kernel.services.auditor_service import AuditorService
from fiscal_kernel.services.catalog_service import CatalogService
from fiscal_kernel.services.company_setting_service import CompanySettingService
from fiscal_kernel.services.ledger_service import LedgerService
from fiscal_kernel.services.obligation_service import ObligationService
from fiscal_kernel.services.rule_service import RuleService
from fiscal_kernel.services.sequence_service import SequenceService

__all__ = [
    "AuditorService",
    "CatalogService",
    "CompanySettingService",
    "LedgerService",
    "ObligationService",
    "RuleService",
    "SequenceService",
]
