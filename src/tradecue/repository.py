"""Durable storage for work items, runs, orders and agent status."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from dataclasses import asdict
from typing import Any, Protocol, Sequence

import aiosqlite

from tradecue import db
from tradecue.errors import IdempotencyConflictError
from tradecue.models import (
    AgentStatus,
    FillRecord,
    NewWorkItem,
    OrderRecord,
    RunStatus,
    WorkItem,
    WorkItemRun,
    WorkItemStatus,
    WorkItemType,
    parse_payload,
)

logger = logging.getLogger(__name__)

# CAS attempts before claim_next gives up on a contended tick
MAX_CLAIM_RACES = 5


class JobRepository(Protocol):
    async def create_work_item(self, new: NewWorkItem, *, max_attempts: int) -> WorkItem: ...

    async def get_work_item(self, item_id: str) -> WorkItem | None: ...

    async def get_live_work_item_by_key(self, key: str) -> WorkItem | None: ...

    async def claim_next(
        self,
        types: Sequence[WorkItemType] | None,
        *,
        worker_id: str,
        lease_seconds: float,
    ) -> WorkItem | None: ...

    async def update_work_item(
        self,
        item_id: str,
        fields: dict[str, Any],
        *,
        expect_status: Sequence[WorkItemStatus] | None = None,
    ) -> bool: ...

    async def count_work_items(
        self, status: WorkItemStatus | None = None, item_type: WorkItemType | None = None
    ) -> int: ...

    async def list_work_items(
        self,
        *,
        status: WorkItemStatus | None = None,
        item_type: WorkItemType | None = None,
        limit: int = 50,
    ) -> list[WorkItem]: ...

    async def create_run(self, item: WorkItem) -> WorkItemRun: ...

    async def finish_run(self, run_id: str, status: RunStatus, error: str | None = None) -> None: ...

    async def list_runs(self, item_id: str) -> list[WorkItemRun]: ...


class StatusStore(Protocol):
    async def get_status(self) -> AgentStatus: ...

    async def set_status(self, *, kill_switch_active: bool) -> AgentStatus: ...


class OrderStore(Protocol):
    async def upsert_order(self, order: OrderRecord) -> None: ...

    async def get_order(self, broker_order_id: str) -> OrderRecord | None: ...

    async def record_fill(self, fill: FillRecord) -> bool: ...

    async def has_fill(self, broker_order_id: str) -> bool: ...


def _dumps(value: Any) -> str | None:
    return None if value is None else json.dumps(value, sort_keys=True, default=str)


def _loads(value: str | None) -> Any:
    return None if value is None else json.loads(value)


def _row_to_item(row: dict) -> WorkItem:
    item_type = WorkItemType(row["type"])
    return WorkItem(
        id=row["id"],
        type=item_type,
        status=WorkItemStatus(row["status"]),
        payload=parse_payload(item_type, _loads(row["payload"])),
        idempotency_key=row["idempotency_key"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        next_run_at=row["next_run_at"],
        last_error=row["last_error"],
        broker_order_id=row["broker_order_id"],
        result=_loads(row["result"]),
        symbol=row["symbol"],
        decision_id=row["decision_id"],
        claimed_by=row["claimed_by"],
        lease_expires_at=row["lease_expires_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_run(row: dict) -> WorkItemRun:
    return WorkItemRun(
        id=row["id"],
        work_item_id=row["work_item_id"],
        attempt_number=row["attempt_number"],
        status=RunStatus(row["status"]),
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        error=row["error"],
        duration_ms=row["duration_ms"],
    )


def _column_value(value: Any) -> Any:
    if isinstance(value, (WorkItemStatus, WorkItemType, RunStatus)):
        return value.value
    return value


class SqliteRepository:
    """
    aiosqlite-backed repository. Implements JobRepository, StatusStore
    and OrderStore.

    Example:
        repo = SqliteRepository("tradecue.db")
        await repo.connect()
        ...
        await repo.close()
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        if self._conn is None:
            self._conn = await db.init_db(self.db_path)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> SqliteRepository:
        await self.connect()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Repository is not connected; call connect() first")
        return self._conn

    # --- Work items ---

    async def create_work_item(self, new: NewWorkItem, *, max_attempts: int) -> WorkItem:
        """Persist a new PENDING item.

        Raises:
            IdempotencyConflictError: A live item already holds the key.
        """
        now = time.time()
        row = {
            "id": uuid.uuid4().hex,
            "type": new.type.value,
            "status": WorkItemStatus.PENDING.value,
            "payload": _dumps(new.payload.to_dict()),
            "idempotency_key": new.idempotency_key,
            "attempts": 0,
            "max_attempts": new.max_attempts or max_attempts,
            "next_run_at": new.run_at if new.run_at is not None else now,
            "symbol": new.symbol,
            "decision_id": new.decision_id,
            "created_at": now,
            "updated_at": now,
        }
        try:
            await db.insert_work_item(self.conn, row)
        except sqlite3.IntegrityError as e:
            raise IdempotencyConflictError(
                f"Live work item already exists for key {new.idempotency_key}"
            ) from e
        created = await db.get_work_item(self.conn, row["id"])
        return _row_to_item(created)

    async def get_work_item(self, item_id: str) -> WorkItem | None:
        row = await db.get_work_item(self.conn, item_id)
        return _row_to_item(row) if row else None

    async def get_live_work_item_by_key(self, key: str) -> WorkItem | None:
        row = await db.get_live_work_item_by_key(self.conn, key)
        return _row_to_item(row) if row else None

    async def claim_next(
        self,
        types: Sequence[WorkItemType] | None = None,
        *,
        worker_id: str,
        lease_seconds: float,
    ) -> WorkItem | None:
        """Lease the next due item to ``worker_id``, or return None."""
        type_names = [t.value for t in types] if types else None

        for _ in range(MAX_CLAIM_RACES):
            now = time.time()
            candidate = await db.find_claimable(self.conn, now, type_names)
            if candidate is None:
                return None

            if candidate["status"] == WorkItemStatus.RUNNING.value:
                logger.warning(
                    "Reclaiming work item %s after lapsed lease (was held by %s)",
                    candidate["id"],
                    candidate["claimed_by"],
                    extra={"work_item_id": candidate["id"], "claimed_by": candidate["claimed_by"]},
                )

            won = await db.lease_work_item(
                self.conn,
                candidate,
                worker_id=worker_id,
                now=now,
                lease_expires_at=now + lease_seconds,
            )
            if won:
                row = await db.get_work_item(self.conn, candidate["id"])
                return _row_to_item(row) if row else None

        logger.debug("Lost %d claim races in a row, yielding", MAX_CLAIM_RACES)
        return None

    async def update_work_item(
        self,
        item_id: str,
        fields: dict[str, Any],
        *,
        expect_status: Sequence[WorkItemStatus] | None = None,
    ) -> bool:
        """Update an item's columns.

        Raises:
            IdempotencyConflictError: The change would make a second live
                item for the same idempotency key.
        """
        columns = {k: _column_value(v) for k, v in fields.items()}
        if "result" in columns:
            columns["result"] = _dumps(columns["result"])
        columns.setdefault("updated_at", time.time())
        expected = [s.value for s in expect_status] if expect_status else None

        try:
            return await db.update_work_item(self.conn, item_id, columns, expect_status=expected)
        except sqlite3.IntegrityError as e:
            raise IdempotencyConflictError(
                f"Another live work item holds the idempotency key of {item_id}"
            ) from e

    async def count_work_items(
        self, status: WorkItemStatus | None = None, item_type: WorkItemType | None = None
    ) -> int:
        return await db.count_work_items(
            self.conn,
            status.value if status else None,
            item_type.value if item_type else None,
        )

    async def count_by_status(self) -> dict[WorkItemStatus, int]:
        counts = await db.count_by_status(self.conn)
        return {status: counts.get(status.value, 0) for status in WorkItemStatus}

    async def list_work_items(
        self,
        *,
        status: WorkItemStatus | None = None,
        item_type: WorkItemType | None = None,
        limit: int = 50,
    ) -> list[WorkItem]:
        rows = await db.list_work_items(
            self.conn,
            status.value if status else None,
            item_type.value if item_type else None,
            limit,
        )
        return [_row_to_item(row) for row in rows]

    # --- Runs ---

    async def create_run(self, item: WorkItem) -> WorkItemRun:
        run = WorkItemRun(
            id=uuid.uuid4().hex,
            work_item_id=item.id,
            attempt_number=item.attempts + 1,
            status=RunStatus.RUNNING,
            started_at=time.time(),
        )
        await db.insert_run(
            self.conn,
            {
                "id": run.id,
                "work_item_id": run.work_item_id,
                "attempt_number": run.attempt_number,
                "status": run.status.value,
                "started_at": run.started_at,
            },
        )
        return run

    async def finish_run(self, run_id: str, status: RunStatus, error: str | None = None) -> None:
        await db.finish_run(
            self.conn, run_id, status=status.value, finished_at=time.time(), error=error
        )

    async def list_runs(self, item_id: str) -> list[WorkItemRun]:
        return [_row_to_run(row) for row in await db.list_runs(self.conn, item_id)]

    # --- Orders and fills ---

    async def upsert_order(self, order: OrderRecord) -> None:
        row = order.to_row()
        row["raw"] = _dumps(row["raw"])
        row["extended_hours"] = int(bool(row["extended_hours"]))
        row["updated_at"] = time.time()
        await db.upsert_order(self.conn, row)

    async def get_order(self, broker_order_id: str) -> OrderRecord | None:
        row = await db.get_order(self.conn, broker_order_id)
        if row is None:
            return None
        row.pop("updated_at", None)
        row["raw"] = _loads(row["raw"])
        row["extended_hours"] = bool(row["extended_hours"])
        return OrderRecord(**row)

    async def record_fill(self, fill: FillRecord) -> bool:
        return await db.insert_fill(self.conn, {**asdict(fill), "created_at": time.time()})

    async def has_fill(self, broker_order_id: str) -> bool:
        return await db.has_fill_for_order(self.conn, broker_order_id)

    # --- Agent status ---

    async def get_status(self) -> AgentStatus:
        row = await db.get_agent_status(self.conn)
        return AgentStatus(
            kill_switch_active=bool(row["kill_switch_active"]),
            updated_at=row["updated_at"],
        )

    async def set_status(self, *, kill_switch_active: bool) -> AgentStatus:
        now = time.time()
        await db.set_agent_status(self.conn, kill_switch_active=kill_switch_active, updated_at=now)
        return AgentStatus(kill_switch_active=kill_switch_active, updated_at=now)

