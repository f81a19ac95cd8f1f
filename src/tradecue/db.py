"""Database operations for tradecue."""

from __future__ import annotations

from typing import Any, Sequence

import aiosqlite

SCHEMA_VERSION = 1

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Work items: the queue
CREATE TABLE IF NOT EXISTS work_items (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    payload TEXT NOT NULL,  -- JSON
    idempotency_key TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    next_run_at REAL NOT NULL,
    last_error TEXT,
    broker_order_id TEXT,
    result TEXT,  -- JSON
    symbol TEXT,
    decision_id TEXT,
    claimed_by TEXT,
    lease_expires_at REAL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_work_items_claim ON work_items(status, next_run_at);
CREATE INDEX IF NOT EXISTS idx_work_items_type ON work_items(type);
CREATE INDEX IF NOT EXISTS idx_work_items_symbol ON work_items(symbol);
CREATE INDEX IF NOT EXISTS idx_work_items_created ON work_items(created_at);

-- At most one live (non dead-lettered) item per idempotency key
CREATE UNIQUE INDEX IF NOT EXISTS idx_work_items_live_key
    ON work_items(idempotency_key)
    WHERE idempotency_key IS NOT NULL AND status != 'DEAD_LETTER';

-- Run audit trail, one row per claim
CREATE TABLE IF NOT EXISTS work_item_runs (
    id TEXT PRIMARY KEY,
    work_item_id TEXT NOT NULL REFERENCES work_items(id),
    attempt_number INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'RUNNING',
    started_at REAL NOT NULL,
    finished_at REAL,
    error TEXT,
    duration_ms INTEGER
);

CREATE INDEX IF NOT EXISTS idx_work_item_runs_item ON work_item_runs(work_item_id);

-- Broker orders, keyed by broker order id
CREATE TABLE IF NOT EXISTS orders (
    broker_order_id TEXT PRIMARY KEY,
    client_order_id TEXT,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    type TEXT NOT NULL,
    time_in_force TEXT,
    qty TEXT,
    notional TEXT,
    limit_price TEXT,
    stop_price TEXT,
    extended_hours INTEGER DEFAULT 0,
    order_class TEXT,
    status TEXT NOT NULL,
    filled_qty TEXT,
    filled_avg_price TEXT,
    submitted_at TEXT,
    filled_at TEXT,
    trace_id TEXT,
    work_item_id TEXT,
    raw TEXT,  -- JSON
    updated_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_orders_client_order_id ON orders(client_order_id);
CREATE INDEX IF NOT EXISTS idx_orders_symbol ON orders(symbol);

-- Fills
CREATE TABLE IF NOT EXISTS fills (
    broker_fill_id TEXT PRIMARY KEY,
    broker_order_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    qty TEXT NOT NULL,
    price TEXT NOT NULL,
    occurred_at TEXT NOT NULL,
    trace_id TEXT,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_fills_broker_order_id ON fills(broker_order_id);

-- Single-row agent status
CREATE TABLE IF NOT EXISTS agent_status (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    kill_switch_active INTEGER NOT NULL DEFAULT 0,
    updated_at REAL
);
"""


async def init_db(db_path: str) -> aiosqlite.Connection:
    """
    Initialize database connection and schema.

    Args:
        db_path: Path to SQLite file or ":memory:" for in-memory.

    Returns:
        Open database connection.
    """
    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row

    # Enable WAL mode for better concurrency
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")

    async with conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    ) as cursor:
        exists = await cursor.fetchone()

    if not exists:
        await conn.executescript(SCHEMA)
        await conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        await conn.execute("INSERT OR IGNORE INTO agent_status (id, kill_switch_active) VALUES (1, 0)")
        await conn.commit()

    return conn


# --- Work items ---


async def insert_work_item(conn: aiosqlite.Connection, item: dict) -> None:
    """Insert a new work item. Raises IntegrityError on a live key clash."""
    columns = list(item.keys())
    placeholders = ", ".join(["?"] * len(columns))
    column_names = ", ".join(columns)

    try:
        await conn.execute(
            f"INSERT INTO work_items ({column_names}) VALUES ({placeholders})",
            list(item.values()),
        )
    except Exception:
        await conn.rollback()
        raise
    await conn.commit()


async def update_work_item(
    conn: aiosqlite.Connection,
    item_id: str,
    fields: dict[str, Any],
    *,
    expect_status: Sequence[str] | None = None,
) -> bool:
    """Update columns of one work item.

    With ``expect_status`` the update only applies while the row is in
    one of those statuses. Returns True if a row changed.
    """
    assignments = ", ".join(f"{column} = ?" for column in fields)
    query = f"UPDATE work_items SET {assignments} WHERE id = ?"
    params: list = [*fields.values(), item_id]

    if expect_status:
        query += f" AND status IN ({', '.join(['?'] * len(expect_status))})"
        params.extend(expect_status)

    try:
        cursor = await conn.execute(query, params)
    except Exception:
        await conn.rollback()
        raise
    await conn.commit()
    return cursor.rowcount == 1


async def get_work_item(conn: aiosqlite.Connection, item_id: str) -> dict | None:
    """Get a work item by ID."""
    async with conn.execute("SELECT * FROM work_items WHERE id = ?", (item_id,)) as cursor:
        row = await cursor.fetchone()
        return dict(row) if row else None


async def get_live_work_item_by_key(conn: aiosqlite.Connection, key: str) -> dict | None:
    """Find the non dead-lettered work item holding an idempotency key."""
    async with conn.execute(
        "SELECT * FROM work_items WHERE idempotency_key = ? AND status != 'DEAD_LETTER'",
        (key,),
    ) as cursor:
        row = await cursor.fetchone()
        return dict(row) if row else None


async def find_claimable(
    conn: aiosqlite.Connection,
    now: float,
    types: Sequence[str] | None = None,
) -> dict | None:
    """Oldest due item: PENDING past next_run_at, or RUNNING with a lapsed lease."""
    query = """
        SELECT * FROM work_items
        WHERE (
            (status = 'PENDING' AND next_run_at <= ?)
            OR (status = 'RUNNING' AND lease_expires_at IS NOT NULL AND lease_expires_at <= ?)
        )
    """
    params: list = [now, now]

    if types:
        query += f" AND type IN ({', '.join(['?'] * len(types))})"
        params.extend(types)

    query += " ORDER BY next_run_at, created_at LIMIT 1"

    async with conn.execute(query, params) as cursor:
        row = await cursor.fetchone()
        return dict(row) if row else None


async def lease_work_item(
    conn: aiosqlite.Connection,
    candidate: dict,
    *,
    worker_id: str,
    now: float,
    lease_expires_at: float,
) -> bool:
    """Compare-and-set a candidate into RUNNING. False if another worker won."""
    cursor = await conn.execute(
        """
        UPDATE work_items
        SET status = 'RUNNING', claimed_by = ?, lease_expires_at = ?, updated_at = ?
        WHERE id = ? AND status = ? AND updated_at = ? AND lease_expires_at IS ?
        """,
        (
            worker_id,
            lease_expires_at,
            now,
            candidate["id"],
            candidate["status"],
            candidate["updated_at"],
            candidate["lease_expires_at"],
        ),
    )
    await conn.commit()
    return cursor.rowcount == 1


async def count_work_items(
    conn: aiosqlite.Connection,
    status: str | None = None,
    item_type: str | None = None,
) -> int:
    query = "SELECT COUNT(*) FROM work_items WHERE 1=1"
    params: list = []

    if status:
        query += " AND status = ?"
        params.append(status)
    if item_type:
        query += " AND type = ?"
        params.append(item_type)

    async with conn.execute(query, params) as cursor:
        row = await cursor.fetchone()
        return int(row[0])


async def count_by_status(conn: aiosqlite.Connection) -> dict[str, int]:
    async with conn.execute(
        "SELECT status, COUNT(*) AS n FROM work_items GROUP BY status"
    ) as cursor:
        rows = await cursor.fetchall()
        return {row["status"]: int(row["n"]) for row in rows}


async def list_work_items(
    conn: aiosqlite.Connection,
    status: str | None = None,
    item_type: str | None = None,
    limit: int = 50,
) -> list[dict]:
    """List work items, newest first, with optional filters."""
    query = "SELECT * FROM work_items WHERE 1=1"
    params: list = []

    if status:
        query += " AND status = ?"
        params.append(status)
    if item_type:
        query += " AND type = ?"
        params.append(item_type)

    query += " ORDER BY created_at DESC LIMIT ?"
    params.append(limit)

    async with conn.execute(query, params) as cursor:
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]


# --- Runs ---


async def insert_run(conn: aiosqlite.Connection, run: dict) -> None:
    await conn.execute(
        """
        INSERT INTO work_item_runs (id, work_item_id, attempt_number, status, started_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (run["id"], run["work_item_id"], run["attempt_number"], run["status"], run["started_at"]),
    )
    await conn.commit()


async def finish_run(
    conn: aiosqlite.Connection,
    run_id: str,
    *,
    status: str,
    finished_at: float,
    error: str | None = None,
) -> None:
    await conn.execute(
        """
        UPDATE work_item_runs
        SET status = ?, finished_at = ?, error = ?,
            duration_ms = CAST((? - started_at) * 1000 AS INTEGER)
        WHERE id = ?
        """,
        (status, finished_at, error, finished_at, run_id),
    )
    await conn.commit()


async def list_runs(conn: aiosqlite.Connection, work_item_id: str) -> list[dict]:
    async with conn.execute(
        "SELECT * FROM work_item_runs WHERE work_item_id = ? ORDER BY started_at, attempt_number",
        (work_item_id,),
    ) as cursor:
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]


# --- Orders and fills ---


async def upsert_order(conn: aiosqlite.Connection, order: dict) -> None:
    """Insert or update an order by broker order id."""
    columns = list(order.keys())
    placeholders = ", ".join(["?"] * len(columns))
    updates = ", ".join(
        f"{column} = COALESCE(excluded.{column}, orders.{column})"
        for column in columns
        if column != "broker_order_id"
    )

    await conn.execute(
        f"""
        INSERT INTO orders ({', '.join(columns)}) VALUES ({placeholders})
        ON CONFLICT(broker_order_id) DO UPDATE SET {updates}
        """,
        list(order.values()),
    )
    await conn.commit()


async def get_order(conn: aiosqlite.Connection, broker_order_id: str) -> dict | None:
    async with conn.execute(
        "SELECT * FROM orders WHERE broker_order_id = ?", (broker_order_id,)
    ) as cursor:
        row = await cursor.fetchone()
        return dict(row) if row else None


async def insert_fill(conn: aiosqlite.Connection, fill: dict) -> bool:
    """Insert a fill. Returns False if it was already recorded."""
    cursor = await conn.execute(
        """
        INSERT OR IGNORE INTO fills (
            broker_fill_id, broker_order_id, symbol, side, qty, price,
            occurred_at, trace_id, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            fill["broker_fill_id"],
            fill["broker_order_id"],
            fill["symbol"],
            fill["side"],
            fill["qty"],
            fill["price"],
            fill["occurred_at"],
            fill.get("trace_id"),
            fill["created_at"],
        ),
    )
    await conn.commit()
    return cursor.rowcount == 1


async def has_fill_for_order(conn: aiosqlite.Connection, broker_order_id: str) -> bool:
    async with conn.execute(
        "SELECT 1 FROM fills WHERE broker_order_id = ? LIMIT 1", (broker_order_id,)
    ) as cursor:
        return await cursor.fetchone() is not None


# --- Agent status ---


async def get_agent_status(conn: aiosqlite.Connection) -> dict:
    async with conn.execute("SELECT * FROM agent_status WHERE id = 1") as cursor:
        row = await cursor.fetchone()
        return dict(row) if row else {"kill_switch_active": 0, "updated_at": None}


async def set_agent_status(
    conn: aiosqlite.Connection, *, kill_switch_active: bool, updated_at: float
) -> None:
    await conn.execute(
        """
        INSERT INTO agent_status (id, kill_switch_active, updated_at) VALUES (1, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            kill_switch_active = excluded.kill_switch_active,
            updated_at = excluded.updated_at
        """,
        (int(kill_switch_active), updated_at),
    )
    await conn.commit()
