"""Encore import pipeline: orchestrator, progress bus, status store and resync."""

from encore.importer.orchestrator import ImportOrchestrator, ImportResult, ImportStats, stage_progress
from encore.importer.progress import ImportStage, ProgressBus, ProgressEvent
from encore.importer.resync import ResyncDriver, ResyncRequest, ResyncSummary
from encore.importer.scheduler import ResyncScheduler
from encore.importer.status import SyncStatusStore
from encore.importer.tasks import TaskRunner

__all__ = [
    "ImportOrchestrator",
    "ImportResult",
    "ImportStage",
    "ImportStats",
    "ProgressBus",
    "ProgressEvent",
    "ResyncDriver",
    "ResyncRequest",
    "ResyncScheduler",
    "ResyncSummary",
    "SyncStatusStore",
    "TaskRunner",
    "stage_progress",
]
