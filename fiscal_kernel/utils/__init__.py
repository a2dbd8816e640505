"""Utility modules for the fiscal kernel."""

from fiscal_kernel.utils.hashing import (
    canonicalize_json,
    hash_audit_entry,
    hash_payload,
    to_jsonable,
)

__all__ = [
    "canonicalize_json",
    "hash_audit_entry",
    "hash_payload",
    "to_jsonable",
]
