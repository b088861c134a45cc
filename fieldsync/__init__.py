from .config import Settings, load_settings
from .connectivity import ConnectivityProbe
from .forms import FormsClient, FormsConfig, FormsSubmissionError, FormsSubmitter, SubmissionAdapter, build_answers
from .models import (
    AgentSnapshot,
    ItemResult,
    PendingRegistration,
    RegistrationPayload,
    RegistrationValidationError,
    SubmissionResult,
    SyncResult,
    SyncStatus,
)
from .notifications import DatastoreNotificationSink, NotificationSink
from .queue import QueueStorageError, SqliteQueue
from .scheduler import AutoSyncScheduler
from .sync import CaptureOutcome, RegistrationSync, SyncOrchestrator

__all__ = [
    "AgentSnapshot",
    "AutoSyncScheduler",
    "CaptureOutcome",
    "ConnectivityProbe",
    "DatastoreNotificationSink",
    "FormsClient",
    "FormsConfig",
    "FormsSubmissionError",
    "FormsSubmitter",
    "ItemResult",
    "NotificationSink",
    "PendingRegistration",
    "QueueStorageError",
    "RegistrationPayload",
    "RegistrationSync",
    "RegistrationValidationError",
    "Settings",
    "SqliteQueue",
    "SubmissionAdapter",
    "SubmissionResult",
    "SyncOrchestrator",
    "SyncResult",
    "SyncStatus",
    "build_answers",
    "load_settings",
]
