"""
Fiscal Kernel

Tax rule resolution and period ledger engine:
- Deterministic rule resolution (specificity, priority, recency)
- Decimal tax calculation with per-line half-up rounding
- Closeable monthly ledgers
- Accessory obligation lifecycle
- Hash-chained, append-only audit log
"""

__version__ = "0.1.0"
