"""tradecue - A durable work queue for automated order execution."""

from tradecue.engine import WorkQueue, generate_idempotency_key
from tradecue.errors import (
    BrokerError,
    ConfigError,
    IdempotencyConflictError,
    JobRejected,
    PayloadError,
    TradecueError,
    WorkItemNotFound,
)
from tradecue.models import NewWorkItem, WorkItem, WorkItemRun, WorkItemStatus, WorkItemType
from tradecue.repository import SqliteRepository

__version__ = "0.1.0"
__all__ = [
    "WorkQueue",
    "SqliteRepository",
    "NewWorkItem",
    "WorkItem",
    "WorkItemRun",
    "WorkItemStatus",
    "WorkItemType",
    "generate_idempotency_key",
    "TradecueError",
    "ConfigError",
    "PayloadError",
    "JobRejected",
    "BrokerError",
    "IdempotencyConflictError",
    "WorkItemNotFound",
]
