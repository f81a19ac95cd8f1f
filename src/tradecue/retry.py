"""Error classification and retry backoff.

Both policies are plain data: an ordered table of patterns for the
classifier and a per-type delay table for the backoff. The functions
here only walk those tables.
"""

from __future__ import annotations

import asyncio
import random
import re
import time
from enum import Enum
from typing import Callable, Mapping, Sequence

import httpx

from tradecue.errors import BrokerError, JobRejected, PayloadError, UniverseSyncError
from tradecue.models import WorkItemType


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


# Checked in order, first match wins.
ERROR_TYPE_CLASSES: tuple[tuple[type[BaseException], ErrorClass], ...] = (
    (JobRejected, ErrorClass.PERMANENT),
    (PayloadError, ErrorClass.PERMANENT),
    (UniverseSyncError, ErrorClass.TRANSIENT),
    (httpx.TimeoutException, ErrorClass.TRANSIENT),
    (httpx.TransportError, ErrorClass.TRANSIENT),
    (asyncio.TimeoutError, ErrorClass.TRANSIENT),
    (TimeoutError, ErrorClass.TRANSIENT),
    (ConnectionError, ErrorClass.TRANSIENT),
)

# Permanent patterns come first so "HTTP 403: account blocked" never retries.
ERROR_PATTERNS: tuple[tuple[re.Pattern[str], ErrorClass], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), error_class)
    for pattern, error_class in (
        (r"invalid.*symbol", ErrorClass.PERMANENT),
        (r"insufficient.*buying", ErrorClass.PERMANENT),
        (r"account.*blocked", ErrorClass.PERMANENT),
        (r"not.*tradable", ErrorClass.PERMANENT),
        (r"invalid.*(quantity|qty)", ErrorClass.PERMANENT),
        (r"rejected", ErrorClass.PERMANENT),
        (r"\b(HTTP|status)[ :]*4(?!29)\d\d\b", ErrorClass.PERMANENT),
        (r"timed?\s?out", ErrorClass.TRANSIENT),
        (r"network", ErrorClass.TRANSIENT),
        (r"ECONNREFUSED|ECONNRESET|ETIMEDOUT", ErrorClass.TRANSIENT),
        (r"connection (reset|refused|aborted)", ErrorClass.TRANSIENT),
        (r"rate.?limit|too many requests", ErrorClass.TRANSIENT),
        (r"\b429\b", ErrorClass.TRANSIENT),
        (r"\b(HTTP|status)[ :]*5\d\d\b", ErrorClass.TRANSIENT),
        (r"temporar(y|ily)", ErrorClass.TRANSIENT),
        (r"unavailable", ErrorClass.TRANSIENT),
    )
)


def classify_error(error: BaseException | str) -> ErrorClass:
    """Map a failure to transient, permanent or unknown."""
    if isinstance(error, BrokerError):
        if error.status_code == 429 or error.status_code >= 500:
            return ErrorClass.TRANSIENT
        if 400 <= error.status_code < 500:
            return ErrorClass.PERMANENT

    if isinstance(error, BaseException):
        for error_type, error_class in ERROR_TYPE_CLASSES:
            if isinstance(error, error_type):
                return error_class

    message = str(error)
    for pattern, error_class in ERROR_PATTERNS:
        if pattern.search(message):
            return error_class
    return ErrorClass.UNKNOWN


def is_retryable(error_class: ErrorClass) -> bool:
    """Unknown failures are retried; the attempt ceiling bounds them."""
    return error_class is not ErrorClass.PERMANENT


# Milliseconds, indexed by attempt count.
RETRY_DELAYS_MS: dict[WorkItemType, tuple[int, ...]] = {
    WorkItemType.SUBMIT_ORDER: (1000, 5000, 15000),
    WorkItemType.CANCEL_ORDER: (1000, 3000, 10000),
    WorkItemType.CLOSE_POSITION: (1000, 5000, 15000),
    WorkItemType.KILL_SWITCH: (500, 2000, 5000),
    WorkItemType.EVALUATE_DECISION: (2000, 10000, 30000),
    WorkItemType.SYNC_ASSET_UNIVERSE: (60000, 300000, 600000),
}

DEFAULT_RETRY_DELAYS_MS: tuple[int, ...] = (5000, 15000, 60000)

JITTER_FRACTION = 0.2


def delay_table(
    item_type: WorkItemType,
    overrides: Mapping[WorkItemType, Sequence[int]] | None = None,
) -> Sequence[int]:
    if overrides and item_type in overrides:
        return overrides[item_type]
    return RETRY_DELAYS_MS.get(item_type, DEFAULT_RETRY_DELAYS_MS)


def backoff_delay_ms(
    item_type: WorkItemType,
    attempts: int,
    *,
    overrides: Mapping[WorkItemType, Sequence[int]] | None = None,
    rand: Callable[[], float] = random.random,
) -> float:
    """Base delay for the attempt count plus up to 20% jitter.

    Attempt counts past the end of the table reuse its last entry.
    """
    delays = delay_table(item_type, overrides)
    base = delays[max(0, min(attempts, len(delays) - 1))]
    return base + rand() * base * JITTER_FRACTION


def next_run_at(
    item_type: WorkItemType,
    attempts: int,
    *,
    now: float | None = None,
    overrides: Mapping[WorkItemType, Sequence[int]] | None = None,
    rand: Callable[[], float] = random.random,
) -> float:
    """Epoch seconds at which a failed item becomes claimable again."""
    start = time.time() if now is None else now
    return start + backoff_delay_ms(item_type, attempts, overrides=overrides, rand=rand) / 1000.0
