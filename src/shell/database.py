"""SQLite database — audit trail of rebalance cycles, operations and reports."""

from __future__ import annotations

from pathlib import Path

import aiosqlite
import structlog

log = structlog.get_logger()

SCHEMA = """
-- One row per scheduled cycle
CREATE TABLE IF NOT EXISTS rebalance_cycles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cycle_id TEXT NOT NULL UNIQUE,
    started_at TEXT DEFAULT (datetime('now')),
    finished_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',   -- 'running', 'completed', 'skipped', 'failed'
    deployable_total REAL,
    apy REAL,
    plan_json TEXT,
    idle_pull_error TEXT,                     -- cycle continued without the idle pull
    error TEXT
);

-- Every deposit/withdraw the orchestrator issued
CREATE TABLE IF NOT EXISTS strategy_operations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cycle_id TEXT NOT NULL,
    strategy TEXT NOT NULL,
    kind TEXT NOT NULL,                       -- 'WITHDRAW', 'DEPOSIT'
    amount REAL NOT NULL,
    success INTEGER NOT NULL,
    error TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

-- Vault reconciliation results
CREATE TABLE IF NOT EXISTS vault_reports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cycle_id TEXT,
    profit REAL NOT NULL DEFAULT 0,
    loss REAL NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_cycles_started ON rebalance_cycles(started_at);
CREATE INDEX IF NOT EXISTS idx_operations_cycle ON strategy_operations(cycle_id);
CREATE INDEX IF NOT EXISTS idx_operations_strategy ON strategy_operations(strategy, created_at);
"""

class Database:
    """Async SQLite handle for the cycle journal."""

    def __init__(self, db_path: str):
        self._path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(SCHEMA)
        await self._conn.commit()
        log.info("database.connected", path=self._path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.commit()
            await self._conn.close()
            self._conn = None
            log.info("database.closed")

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Journal database not connected")
        return self._conn

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        return await self.conn.execute(sql, params)

    async def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        cursor = await self.conn.execute(sql, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        cursor = await self.conn.execute(sql, params)
        return [dict(r) for r in await cursor.fetchall()]

    async def commit(self) -> None:
        await self.conn.commit()
