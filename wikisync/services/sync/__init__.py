# Three-phase sync pipeline
from wikisync.services.sync.context import PhaseReport, SyncContext
from wikisync.services.sync.deep import DeepHydrator
from wikisync.services.sync.detail import DetailHydrator
from wikisync.services.sync.runner import RunSummary, SyncRunner, build_context, new_run_id
from wikisync.services.sync.scanner import MetadataScanner, ScanReport, ScanState

__all__ = [
    "SyncContext", "PhaseReport", "MetadataScanner", "ScanReport", "ScanState",
    "DetailHydrator", "DeepHydrator", "SyncRunner", "RunSummary", "build_context", "new_run_id",
]
