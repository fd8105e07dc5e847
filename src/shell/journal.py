"""Cycle Journal — audit trail for the rebalance loop.

Central writer for cycle, operation and report rows. Writes to SQLite and
emits structlog entries. A failed write is logged and never reaches the
cycle that produced it.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import aiosqlite
import structlog

from src.shell.contract import CycleResult, OperationRecord, ReportResult

if TYPE_CHECKING:
    from src.shell.database import Database

log = structlog.get_logger()


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class CycleJournal:
    """Records what each rebalance cycle did."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def _write(self, event: str, sql: str, params: tuple) -> None:
        try:
            await self._db.execute(sql, params)
            await self._db.commit()
        except (aiosqlite.Error, RuntimeError) as e:
            log.warning("journal.write_failed", journal_event=event, error=str(e))

    async def cycle_started(self, cycle_id: str) -> None:
        await self._write(
            "cycle_started",
            "INSERT INTO rebalance_cycles (cycle_id, started_at, status) VALUES (?, ?, 'running')",
            (cycle_id, _now()),
        )

    async def cycle_finished(self, result: CycleResult) -> None:
        status = "skipped" if result.skipped else "completed"
        plan_json = None
        apy = None
        if result.plan is not None:
            apy = result.plan.apy
            plan_json = json.dumps(result.plan.summary(), default=str)
        await self._write(
            "cycle_finished",
            """UPDATE rebalance_cycles
               SET finished_at = ?, status = ?, deployable_total = ?, apy = ?,
                   plan_json = ?, idle_pull_error = ?
               WHERE cycle_id = ?""",
            (_now(), status, result.deployable_total, apy, plan_json,
             result.idle_pull_error or None, result.cycle_id),
        )

    async def cycle_failed(self, cycle_id: str, error: str) -> None:
        await self._write(
            "cycle_failed",
            "UPDATE rebalance_cycles SET finished_at = ?, status = 'failed', error = ? WHERE cycle_id = ?",
            (_now(), error, cycle_id),
        )

    async def operation(self, cycle_id: str, op: OperationRecord) -> None:
        await self._write(
            "operation",
            """INSERT INTO strategy_operations (cycle_id, strategy, kind, amount, success, error, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (cycle_id, op.strategy, op.kind.value, op.amount, int(op.success),
             op.error or None, _now()),
        )

    async def report(self, cycle_id: str | None, result: ReportResult) -> None:
        await self._write(
            "report",
            "INSERT INTO vault_reports (cycle_id, profit, loss, created_at) VALUES (?, ?, ?, ?)",
            (cycle_id, result.profit, result.loss, _now()),
        )

    # --- Query methods ---

    async def recent_cycles(self, limit: int = 20) -> list[dict]:
        """Return last N cycles, newest first."""
        return await self._db.fetchall(
            "SELECT * FROM rebalance_cycles ORDER BY id DESC LIMIT ?",
            (limit,),
        )

    async def operations_for(self, cycle_id: str) -> list[dict]:
        return await self._db.fetchall(
            "SELECT * FROM strategy_operations WHERE cycle_id = ? ORDER BY id",
            (cycle_id,),
        )

    async def cycle(self, cycle_id: str) -> dict | None:
        return await self._db.fetchone(
            "SELECT * FROM rebalance_cycles WHERE cycle_id = ?", (cycle_id,),
        )
