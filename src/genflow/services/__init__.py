"""
服务模块
"""
from .generation_store import GenerationStore, UpdateOutcome, UpdateResult
from .notification_service import ConversationNotifier, NotificationKind, NotificationSink
from .orchestrator import GenerationOrchestrator, StatusReport, get_orchestrator
from .worker_client import WorkerClient, WorkerResponse, get_worker_client

__all__ = [
    "GenerationStore",
    "UpdateOutcome",
    "UpdateResult",
    "ConversationNotifier",
    "NotificationKind",
    "NotificationSink",
    "GenerationOrchestrator",
    "StatusReport",
    "get_orchestrator",
    "WorkerClient",
    "WorkerResponse",
    "get_worker_client",
]
