"""Exceptions raised by tradecue."""

from __future__ import annotations


class TradecueError(Exception):
    """Base exception for tradecue."""


class ConfigError(TradecueError):
    """Configuration is missing or invalid."""


class PayloadError(TradecueError, ValueError):
    """A work item payload failed validation."""


class WorkItemNotFound(TradecueError, LookupError):
    """No work item exists with the given id."""


class IdempotencyConflictError(TradecueError):
    """Another live work item already holds this idempotency key."""


class JobRejected(TradecueError):
    """A domain rule rejected the job. Never retried.

    Args:
        reason: Human-readable reason, stored as the item's last error.
        category: Short machine-readable reason, used in logs.
    """

    def __init__(self, reason: str, *, category: str = "rejected") -> None:
        super().__init__(reason)
        self.reason = reason
        self.category = category


class BrokerError(TradecueError):
    """The broker answered with a non-success status."""

    def __init__(self, status_code: int, message: str, *, code: int | None = None) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.code = code


class UniverseSyncError(TradecueError):
    """The tradability service reported errors while syncing the asset universe."""
