"""
fiscal_services -- Package init and public API.

Responsibility:
    Stateful orchestration that composes the pure engines
    (fiscal_engines/) with database sessions and kernel services.  This is
    the only layer that owns sessions and transactions.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        fiscal_services/ -> fiscal_engines/, fiscal_kernel/, fiscal_config/  (allowed)
        fiscal_engines/  -> fiscal_services/ (FORBIDDEN)
        fiscal_kernel/   -> fiscal_services/ (FORBIDDEN)
"""

from fiscal_services.fiscal_engine import FiscalEngine, period_lock_key

__all__ = [
    "FiscalEngine",
    "period_lock_key",
]
