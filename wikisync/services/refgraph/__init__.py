# Offline reference graph
from wikisync.services.refgraph.extractor import LinkType, Reference, extract_references, normalize_target
from wikisync.services.refgraph.worker import (
    ReferenceEdge,
    ReferenceGraphPool,
    ReferenceGraphResult,
    aggregate_references,
)

__all__ = [
    "LinkType", "Reference", "extract_references", "normalize_target",
    "ReferenceEdge", "ReferenceGraphPool", "ReferenceGraphResult", "aggregate_references",
]
