"""
sluice.scheduling - Admission, Dequeue and Job Lifecycle
==========================================================

    - priority:          Pure priority assessment and aging rules
    - processing_stats:  Rolling processing-time average
    - admission:         Idempotent, capacity-bounded enqueue
    - batch_selector:    Weighted dequeue sweep
    - lifecycle:         Claim, complete, requeue, cancel, purge, sweeps
    - status:            Read-only status API and backpressure advisory
"""

from sluice.scheduling.admission import AdmissionController, EnqueueResult
from sluice.scheduling.batch_selector import BatchResult, BatchSelector, WeightedJob
from sluice.scheduling.lifecycle import (
    AgingResult,
    AutoRequeueResult,
    CancelResult,
    JobLifecycle,
    PurgeCandidate,
    PurgeResult,
    RequeueOutcome,
)
from sluice.scheduling.priority import (
    PriorityAssessment,
    PriorityContext,
    assess_priority,
    assess_priority_with_content,
    explain_priority,
    upgrade_for_age,
)
from sluice.scheduling.processing_stats import ProcessingTimeTracker
from sluice.scheduling.status import (
    CapacityCheck,
    Notification,
    OwnerStatus,
    QueueMetrics,
    QueueStatusService,
)

__all__ = [
    "PriorityContext",
    "PriorityAssessment",
    "assess_priority",
    "assess_priority_with_content",
    "explain_priority",
    "upgrade_for_age",
    "ProcessingTimeTracker",
    "AdmissionController",
    "EnqueueResult",
    "BatchSelector",
    "BatchResult",
    "WeightedJob",
    "JobLifecycle",
    "RequeueOutcome",
    "CancelResult",
    "PurgeCandidate",
    "PurgeResult",
    "AgingResult",
    "AutoRequeueResult",
    "QueueStatusService",
    "OwnerStatus",
    "QueueMetrics",
    "Notification",
    "CapacityCheck",
]
