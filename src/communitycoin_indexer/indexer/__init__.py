"""Event reconciliation and catch-up indexing."""

from communitycoin_indexer.indexer.batch import BatchIndexer, BatchResult, GroupIndexResult, plan_chunks
from communitycoin_indexer.indexer.processor import EventProcessor, ProcessingSummary
from communitycoin_indexer.indexer.reconciler import EventReconciler, ReconcileOutcome

__all__ = [
    "BatchIndexer",
    "BatchResult",
    "EventProcessor",
    "EventReconciler",
    "GroupIndexResult",
    "ProcessingSummary",
    "ReconcileOutcome",
    "plan_chunks",
]
