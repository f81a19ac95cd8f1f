"""WorkQueue: durable job lifecycle plus the worker loop that drives it."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import random
import time
from functools import partial
from typing import Any, Awaitable, Callable, Sequence

from tradecue import handlers
from tradecue.collaborators import (
    BrokerGateway,
    BrokerOrder,
    DecisionEvaluator,
    OrderRouter,
    TradabilityService,
    TradingEnforcement,
)
from tradecue.config import QueueConfig
from tradecue.errors import ConfigError, IdempotencyConflictError, WorkItemNotFound
from tradecue.models import (
    AgentStatus,
    NewWorkItem,
    RunStatus,
    Succeeded,
    WorkItem,
    WorkItemRun,
    WorkItemStatus,
    WorkItemType,
)
from tradecue.pipeline import OrderSubmissionPipeline
from tradecue.repository import JobRepository, OrderStore, StatusStore
from tradecue.retry import classify_error, is_retryable, next_run_at
from tradecue.router import SmartOrderRouter

logger = logging.getLogger(__name__)

Handler = Callable[[WorkItem], Awaitable[Succeeded]]

# Outcome methods only move items that are still in flight.
OPEN_STATUSES = (WorkItemStatus.PENDING, WorkItemStatus.RUNNING)


def generate_idempotency_key(
    strategy_id: str,
    symbol: str,
    side: str,
    signal_hash: str = "",
    bucket: str | None = None,
) -> str:
    """Stable key for one strategy signal within a one-minute bucket."""
    if bucket is None:
        bucket = str(int(time.time() // 60))
    data = f"{strategy_id}:{symbol}:{side}:{signal_hash}:{bucket}"
    return hashlib.sha256(data.encode()).hexdigest()[:32]


class WorkQueue:
    """
    Durable work queue for order execution.

    Producers enqueue work items; a single worker loop per process claims
    one item per tick, dispatches it by type and records the outcome.

    Example:
        async with SqliteRepository("tradecue.db") as repo:
            queue = WorkQueue(
                repo,
                gateway=gateway,
                enforcement=enforcement,
                tradability=tradability,
            )
            await queue.enqueue(NewWorkItem.create("SUBMIT_ORDER", payload, idempotency_key=key))
            queue.start()
            ...
            await queue.drain()
    """

    def __init__(
        self,
        repository: JobRepository,
        *,
        gateway: BrokerGateway | None = None,
        enforcement: TradingEnforcement | None = None,
        tradability: TradabilityService | None = None,
        router: OrderRouter | None = None,
        evaluator: DecisionEvaluator | None = None,
        status_store: StatusStore | None = None,
        order_store: OrderStore | None = None,
        config: QueueConfig | None = None,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.repository = repository
        self.config = config or QueueConfig()
        self.status_store: StatusStore = status_store or repository  # type: ignore[assignment]
        self.order_store: OrderStore = order_store or repository  # type: ignore[assignment]
        self._rand = rand

        self._handlers: dict[WorkItemType, Handler] = {}
        if gateway is not None and enforcement is not None and tradability is not None:
            self._register_handlers(gateway, enforcement, tradability, router, evaluator)

        # Worker state
        self._cycle_lock = asyncio.Lock()
        self._running = False
        self._loop_task: asyncio.Task | None = None
        self._cycle_tasks: set[asyncio.Task] = set()

    def _register_handlers(
        self,
        gateway: BrokerGateway,
        enforcement: TradingEnforcement,
        tradability: TradabilityService,
        router: OrderRouter | None,
        evaluator: DecisionEvaluator | None,
    ) -> None:
        limit = self.config.worker.recent_order_limit
        self.pipeline = OrderSubmissionPipeline(
            gateway,
            self.status_store,
            self.order_store,
            enforcement,
            tradability,
            router or SmartOrderRouter(),
            recent_order_limit=limit,
        )
        self._handlers = {
            WorkItemType.SUBMIT_ORDER: self.pipeline.run,
            WorkItemType.CANCEL_ORDER: partial(handlers.cancel_order, gateway),
            WorkItemType.SYNC_ORDERS: partial(
                handlers.sync_orders,
                gateway,
                self.order_store,
                limit=limit,
                reconcile=self.record_broker_order,
            ),
            WorkItemType.CLOSE_POSITION: partial(handlers.close_position, gateway),
            WorkItemType.KILL_SWITCH: partial(handlers.kill_switch, gateway, self.status_store),
            WorkItemType.SYNC_ASSET_UNIVERSE: partial(handlers.sync_asset_universe, tradability),
        }
        if evaluator is not None:
            self._handlers[WorkItemType.EVALUATE_DECISION] = partial(
                handlers.evaluate_decision, evaluator
            )

    @property
    def can_process(self) -> bool:
        """False for an admin-only queue built without broker collaborators."""
        return bool(self._handlers)

    # --- Enqueue ---

    async def enqueue(self, item: NewWorkItem) -> WorkItem:
        """
        Persist a new PENDING work item.

        If a live (not dead-lettered) item already holds the idempotency
        key, that item is returned unchanged and nothing is written.
        """
        key = item.idempotency_key
        if key:
            existing = await self.repository.get_live_work_item_by_key(key)
            if existing is not None:
                logger.info(
                    "Duplicate enqueue for key %s, returning existing item %s",
                    key,
                    existing.id,
                    extra={"work_item_id": existing.id, "symbol": existing.symbol},
                )
                return existing

        try:
            created = await self.repository.create_work_item(
                item, max_attempts=self.config.default_max_attempts
            )
        except IdempotencyConflictError:
            # Lost a race with a concurrent producer for the same key
            existing = await self.repository.get_live_work_item_by_key(key) if key else None
            if existing is None:
                raise
            return existing

        logger.info(
            "Enqueued %s %s",
            created.type.value,
            created.id,
            extra={"work_item_id": created.id, "symbol": created.symbol},
        )
        return created

    # --- Claim and outcomes ---

    async def claim_next(self, types: Sequence[WorkItemType] | None = None) -> WorkItem | None:
        """Lease one due item to this worker, or return None."""
        worker = self.config.worker
        return await self.repository.claim_next(
            types, worker_id=worker.worker_id, lease_seconds=worker.lease_seconds
        )

    async def _require(self, item_id: str) -> WorkItem:
        item = await self.repository.get_work_item(item_id)
        if item is None:
            raise WorkItemNotFound(item_id)
        return item

    async def _transition(self, item_id: str, fields: dict[str, Any]) -> WorkItem:
        """Apply an outcome to an in-flight item. Terminal items are left alone."""
        fields = {**fields, "claimed_by": None, "lease_expires_at": None}
        updated = await self.repository.update_work_item(item_id, fields, expect_status=OPEN_STATUSES)
        item = await self._require(item_id)
        if not updated:
            logger.warning(
                "Work item %s is already %s, outcome ignored",
                item_id,
                item.status.value,
                extra={"work_item_id": item_id},
            )
        return item

    async def mark_succeeded(
        self,
        item_id: str,
        result: dict[str, Any] | None = None,
        *,
        broker_order_id: str | None = None,
    ) -> WorkItem:
        fields: dict[str, Any] = {"status": WorkItemStatus.SUCCEEDED, "result": result}
        if broker_order_id is not None:
            fields["broker_order_id"] = broker_order_id
        return await self._transition(item_id, fields)

    async def mark_failed(self, item_id: str, error: str, retryable: bool = True) -> WorkItem:
        """
        Count a failed attempt.

        Dead-letters the item when the failure is not retryable or the
        attempt ceiling is reached, otherwise reschedules it with backoff.
        """
        item = await self._require(item_id)
        attempts = item.attempts + 1

        if not retryable or attempts >= item.max_attempts:
            return await self._transition(
                item_id,
                {"status": WorkItemStatus.DEAD_LETTER, "attempts": attempts, "last_error": error},
            )

        run_at = next_run_at(
            item.type, attempts, overrides=self.config.retry_delays, rand=self._rand
        )
        return await self._transition(
            item_id,
            {
                "status": WorkItemStatus.PENDING,
                "attempts": attempts,
                "last_error": error,
                "next_run_at": run_at,
            },
        )

    async def mark_dead_letter(self, item_id: str, reason: str) -> WorkItem:
        """Dead-letter an item regardless of its attempt count."""
        return await self._transition(
            item_id, {"status": WorkItemStatus.DEAD_LETTER, "last_error": reason}
        )

    # --- Operator actions ---

    async def invalidate(self, item_id: str, reason: str) -> WorkItem:
        """
        Dead-letter an item and release its idempotency key.

        Used when a recorded success turned out not to stick at the broker
        (canceled or rejected afterwards), so the same logical order can be
        enqueued again.
        """
        item = await self._require(item_id)
        synthetic_key = f"invalidated-{item.id}-{int(time.time() * 1000)}"
        await self.repository.update_work_item(
            item_id,
            {
                "status": WorkItemStatus.DEAD_LETTER,
                "idempotency_key": synthetic_key,
                "last_error": f"Invalidated: {reason}",
                "claimed_by": None,
                "lease_expires_at": None,
            },
        )
        logger.warning(
            "Invalidated work item %s (was %s): %s",
            item_id,
            item.status.value,
            reason,
            extra={"work_item_id": item_id, "symbol": item.symbol},
        )
        return await self._require(item_id)

    async def retry_dead_letter(self, item_id: str) -> WorkItem | None:
        """
        Put a dead-lettered item back in the queue with a fresh attempt budget.

        Returns None if the item is not dead-lettered.

        Raises:
            IdempotencyConflictError: A newer live item holds the same key.
        """
        updated = await self.repository.update_work_item(
            item_id,
            {
                "status": WorkItemStatus.PENDING,
                "attempts": 0,
                "next_run_at": time.time(),
                "last_error": None,
                "claimed_by": None,
                "lease_expires_at": None,
            },
            expect_status=(WorkItemStatus.DEAD_LETTER,),
        )
        if not updated:
            return None
        logger.info("Requeued dead-lettered item %s", item_id, extra={"work_item_id": item_id})
        return await self.repository.get_work_item(item_id)

    async def deactivate_kill_switch(self) -> AgentStatus:
        """Clear the kill switch so SUBMIT_ORDER items reach the broker again."""
        status = await self.status_store.set_status(kill_switch_active=False)
        logger.warning("Kill switch deactivated, order submission resumed")
        return status

    async def record_broker_order(self, order: BrokerOrder) -> WorkItem | None:
        """
        Back-fill the broker order id on the live item that placed ``order``.

        The item is found by the order's client order id, either the
        idempotency key itself or a ``{key}-r{n}`` retry of it. Items that
        already carry a broker order id are left alone. Returns the updated
        item, or None if nothing changed.
        """
        if not order.client_order_id:
            return None
        item = await self.repository.get_live_work_item_by_key(order.client_order_id)
        if item is None:
            base, sep, suffix = order.client_order_id.rpartition("-r")
            if sep and suffix.isdigit():
                item = await self.repository.get_live_work_item_by_key(base)
        if item is None or item.broker_order_id:
            return None

        await self.repository.update_work_item(item.id, {"broker_order_id": order.id})
        logger.info(
            "Reconciled work item %s with broker order %s",
            item.id,
            order.id,
            extra={"work_item_id": item.id, "symbol": item.symbol, "broker_order_id": order.id},
        )
        return await self.repository.get_work_item(item.id)

    # --- Queries ---

    async def get(self, item_id: str) -> WorkItem | None:
        return await self.repository.get_work_item(item_id)

    async def get_by_idempotency_key(self, key: str) -> WorkItem | None:
        return await self.repository.get_live_work_item_by_key(key)

    async def pending_count(self, item_type: WorkItemType | None = None) -> int:
        return await self.repository.count_work_items(WorkItemStatus.PENDING, item_type)

    async def recent_items(
        self, limit: int = 50, status: WorkItemStatus | None = None
    ) -> list[WorkItem]:
        return await self.repository.list_work_items(status=status, limit=limit)

    async def runs(self, item_id: str) -> list[WorkItemRun]:
        return await self.repository.list_runs(item_id)

    # --- Processing ---

    async def process(self, item: WorkItem) -> WorkItem:
        """Run one claimed item through its handler and record the outcome."""
        run = await self.repository.create_run(item)
        context = {"work_item_id": item.id, "symbol": item.symbol}

        handler = self._handlers.get(item.type)
        if handler is None:
            reason = f"Unsupported work item type: {item.type.value}"
            logger.error("Dead-lettering %s: %s", item.id, reason, extra=context)
            await self.repository.finish_run(run.id, RunStatus.DEAD_LETTER, reason)
            return await self.mark_dead_letter(item.id, reason)

        try:
            outcome = await handler(item)
        except Exception as e:
            error_class = classify_error(e)
            message = str(e) or type(e).__name__
            updated = await self.mark_failed(item.id, message, retryable=is_retryable(error_class))
            context["error_class"] = error_class.value

            if updated.status is WorkItemStatus.DEAD_LETTER:
                logger.error(
                    "Work item %s dead-lettered after %d attempts (%s): %s",
                    item.id,
                    updated.attempts,
                    error_class.value,
                    message,
                    extra=context,
                )
                await self.repository.finish_run(run.id, RunStatus.DEAD_LETTER, message)
            else:
                logger.warning(
                    "Work item %s failed (%s), retry %d/%d: %s",
                    item.id,
                    error_class.value,
                    updated.attempts,
                    updated.max_attempts,
                    message,
                    extra=context,
                )
                await self.repository.finish_run(run.id, RunStatus.FAILED, message)
            return updated

        await self.repository.finish_run(run.id, RunStatus.SUCCEEDED)
        logger.info("Work item %s succeeded", item.id, extra=context)
        return await self.mark_succeeded(
            item.id, outcome.result, broker_order_id=outcome.broker_order_id
        )

    async def run_cycle(self) -> bool:
        """
        Claim and process at most one item.

        Returns False without doing anything if a cycle is already in
        progress or nothing is due.
        """
        if not self.can_process:
            raise ConfigError("WorkQueue has no broker collaborators and cannot process work")
        if self._cycle_lock.locked():
            logger.debug("Previous cycle still in flight, skipping tick")
            return False

        async with self._cycle_lock:
            item = await self.claim_next()
            if item is None:
                return False
            await self.process(item)
            return True

    # --- Worker loop ---

    @property
    def running(self) -> bool:
        return self._running

    @property
    def busy(self) -> bool:
        return self._cycle_lock.locked()

    def start(self, interval: float | None = None) -> None:
        """
        Start the worker loop.

        Non-blocking: ticks every ``interval`` seconds as a background
        asyncio task. A tick that fires while a cycle is still running is
        skipped.
        """
        if not self.can_process:
            raise ConfigError("WorkQueue has no broker collaborators and cannot process work")
        if self._running:
            return

        self._running = True
        interval = self.config.worker.interval if interval is None else interval
        loop = asyncio.get_running_loop()
        self._loop_task = loop.create_task(self._run_loop(interval))
        logger.info("Worker %s started (interval %.1fs)", self.config.worker.worker_id, interval)

    async def _run_loop(self, interval: float) -> None:
        while self._running:
            task = asyncio.create_task(self._tick())
            self._cycle_tasks.add(task)
            task.add_done_callback(self._cycle_tasks.discard)
            await asyncio.sleep(interval)

    async def _tick(self) -> None:
        if not self._running:
            return
        try:
            await self.run_cycle()
        except Exception:
            logger.exception("Worker cycle failed")

    async def drain(self, timeout: float | None = None) -> bool:
        """
        Stop ticking and wait for the in-flight cycle to finish.

        The cycle is never cancelled. If it is still running after
        ``timeout`` seconds a warning is logged and False is returned.
        """
        timeout = self.config.worker.drain_timeout if timeout is None else timeout
        poll = self.config.worker.drain_poll_interval
        self._running = False

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._cycle_lock.locked():
            if loop.time() >= deadline:
                logger.warning(
                    "Drain timed out after %.1fs with a cycle still in flight", timeout
                )
                return False
            await asyncio.sleep(poll)

        logger.info("Worker %s drained", self.config.worker.worker_id)
        return True
