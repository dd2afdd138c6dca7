"""
Per-session ledger of structural events.

Components:
- entry_types: LedgerEntry and the closed set of entry types
- store: Append-only JSON Lines storage with per-session sequence allocation

Design principles:
- Append-only: entries are never rewritten
- Gap-free: sequence numbers start at 1 and are allocated by one allocator per session
- Off the hot path: read only on cold start, explicit recall, or promotion scan
"""

from .entry_types import ENTRY_TYPES, EntryRefs, EntryType, LedgerEntry, create_entry
from .store import AppendResult, LedgerStore

__all__ = [
    "ENTRY_TYPES",
    "EntryRefs",
    "EntryType",
    "LedgerEntry",
    "create_entry",
    "AppendResult",
    "LedgerStore",
]
