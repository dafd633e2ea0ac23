"""Business logic services for blob-dedup."""

from blob_dedup.services.deduplication import DeduplicationEngine, UploadSpec
from blob_dedup.services.lifecycle import LifecycleManager
from blob_dedup.services.maintenance import (
    BackfillResult,
    DuplicateGroup,
    DuplicateReport,
    backfill_reference_counts,
    purge_orphans,
    report_duplicates,
)
from blob_dedup.services.reconciliation import ReconciliationJob, ReconciliationResult

__all__ = [
    "BackfillResult",
    "DeduplicationEngine",
    "DuplicateGroup",
    "DuplicateReport",
    "LifecycleManager",
    "ReconciliationJob",
    "ReconciliationResult",
    "UploadSpec",
    "backfill_reference_counts",
    "purge_orphans",
    "report_duplicates",
]
