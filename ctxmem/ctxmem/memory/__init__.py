"""
Long-term memory: the gateway boundary and the promotion pipeline.

- gateway: store/retrieve interface, namespaces, local JSONL backend
- http: JSON-over-HTTP client for a remote memory service
- promotion: curated, idempotent promotion of ledger facts
"""

from .gateway import (
    PREFERENCES,
    PROJECT_FACTS,
    LocalMemoryGateway,
    MemoryGateway,
    MemoryRecord,
    RecordOutcome,
    RetrievedRecord,
    build_gateway,
    namespace_for,
)
from .promotion import PromotionEngine, PromotionResult, format_record

__all__ = [
    "PREFERENCES",
    "PROJECT_FACTS",
    "LocalMemoryGateway",
    "MemoryGateway",
    "MemoryRecord",
    "RecordOutcome",
    "RetrievedRecord",
    "build_gateway",
    "namespace_for",
    "PromotionEngine",
    "PromotionResult",
    "format_record",
]
