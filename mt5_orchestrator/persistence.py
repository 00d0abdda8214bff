from __future__ import annotations

import json
import sqlite3
import time
from dataclasses import asdict
from typing import Any

from mt5_orchestrator.broker.base import PlacementResult
from mt5_orchestrator.config import OrchestratorConfig
from mt5_orchestrator.events import OrchestratorObserver
from mt5_orchestrator.orders import OrderIntent
from mt5_orchestrator.types import CycleResult


class SqliteStore:
    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn = sqlite3.connect(db_path)
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    def start_run(self, cfg: OrchestratorConfig) -> int:
        cfg_dict = asdict(cfg)
        if cfg_dict.get("terminal", {}).get("password"):
            cfg_dict["terminal"]["password"] = "***"
        cur = self._conn.cursor()
        cur.execute(
            "INSERT INTO runs(started_epoch_s, symbol, config_json) VALUES(?, ?, ?)",
            (time.time(), str(cfg.symbol), json.dumps(_to_jsonable(cfg_dict), sort_keys=True)),
        )
        self._conn.commit()
        return int(cur.lastrowid)

    def end_run(self, run_id: int, *, stop_reason: str | None = None, total_pnl: float | None = None) -> None:
        self._conn.execute(
            "UPDATE runs SET ended_epoch_s=?, stop_reason=?, total_pnl=? WHERE id=?",
            (time.time(), stop_reason, total_pnl, int(run_id)),
        )
        self._conn.commit()

    def log_order(self, run_id: int, *, intent: OrderIntent, result: PlacementResult) -> None:
        self._conn.execute(
            "INSERT INTO orders(run_id, ts_epoch_s, ticket, symbol, kind, side, volume, price, stop_loss, take_profit, tag, retcode, status) "
            "VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                int(run_id),
                time.time(),
                int(result.ticket) if result.ok else None,
                str(intent.symbol),
                intent.kind.name,
                intent.side.name,
                float(intent.volume),
                intent.price,
                intent.stop_loss,
                intent.take_profit,
                str(intent.tag),
                int(result.retcode),
                "placed" if result.ok else "rejected",
            ),
        )
        self._conn.commit()

    def update_order_status(self, ticket: int, status: str) -> None:
        self._conn.execute("UPDATE orders SET status=? WHERE ticket=?", (str(status), int(ticket)))
        self._conn.commit()

    def get_order_status(self, ticket: int) -> str | None:
        cur = self._conn.execute(
            "SELECT status FROM orders WHERE ticket=? ORDER BY ts_epoch_s DESC, id DESC LIMIT 1",
            (int(ticket),),
        )
        row = cur.fetchone()
        return str(row[0]) if row else None

    def log_cycle(self, run_id: int, result: CycleResult, total_pnl: float) -> None:
        self._conn.execute(
            "INSERT INTO cycles(run_id, ts_epoch_s, cycle, condition, outcome, realized_pnl, total_pnl, tickets_json, reason) "
            "VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                int(run_id),
                time.time(),
                int(result.cycle),
                result.condition.name if result.condition is not None else None,
                result.outcome.value,
                float(result.realized_pnl),
                float(total_pnl),
                json.dumps([int(t) for t in result.tickets]),
                result.reason,
            ),
        )
        self._conn.commit()

    def list_cycles(self, run_id: int) -> list[dict[str, Any]]:
        cur = self._conn.execute(
            "SELECT cycle, condition, outcome, realized_pnl, total_pnl, tickets_json, reason FROM cycles WHERE run_id=? ORDER BY cycle",
            (int(run_id),),
        )
        return [
            {
                "cycle": int(c),
                "condition": cond,
                "outcome": out,
                "realized_pnl": float(pnl),
                "total_pnl": float(total),
                "tickets": json.loads(tickets),
                "reason": reason,
            }
            for c, cond, out, pnl, total, tickets, reason in cur.fetchall()
        ]

    def log_error(self, run_id: int, *, where: str, message: str) -> None:
        self._conn.execute(
            "INSERT INTO errors(run_id, ts_epoch_s, where_text, message) VALUES(?, ?, ?, ?)",
            (int(run_id), time.time(), str(where), str(message)),
        )
        self._conn.commit()

    def _ensure_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS schema_version(
                version INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS runs(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_epoch_s REAL NOT NULL,
                ended_epoch_s REAL,
                symbol TEXT NOT NULL,
                config_json TEXT NOT NULL,
                stop_reason TEXT,
                total_pnl REAL
            );

            CREATE TABLE IF NOT EXISTS orders(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER NOT NULL,
                ts_epoch_s REAL NOT NULL,
                ticket INTEGER,
                symbol TEXT NOT NULL,
                kind TEXT NOT NULL,
                side TEXT NOT NULL,
                volume REAL NOT NULL,
                price REAL,
                stop_loss REAL,
                take_profit REAL,
                tag TEXT,
                retcode INTEGER NOT NULL,
                status TEXT NOT NULL,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            );

            CREATE INDEX IF NOT EXISTS idx_orders_ticket ON orders(ticket);

            CREATE TABLE IF NOT EXISTS cycles(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER NOT NULL,
                ts_epoch_s REAL NOT NULL,
                cycle INTEGER NOT NULL,
                condition TEXT,
                outcome TEXT NOT NULL,
                realized_pnl REAL NOT NULL,
                total_pnl REAL NOT NULL,
                tickets_json TEXT NOT NULL,
                reason TEXT,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            );

            CREATE TABLE IF NOT EXISTS errors(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER NOT NULL,
                ts_epoch_s REAL NOT NULL,
                where_text TEXT NOT NULL,
                message TEXT NOT NULL,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            );
            """
        )
        cur = self._conn.execute("SELECT COUNT(*) FROM schema_version")
        if int(cur.fetchone()[0]) == 0:
            self._conn.execute("INSERT INTO schema_version(version) VALUES(1)")
        self._conn.commit()


class JournalObserver(OrchestratorObserver):
    """Writes orders, cancellations, cycle results and errors to the store."""

    def __init__(self, store: SqliteStore, run_id: int) -> None:
        self._store = store
        self._run_id = int(run_id)

    def on_order_placed(self, intent, result):
        self._store.log_order(self._run_id, intent=intent, result=result)

    def on_placement_failed(self, intent, result):
        self._store.log_order(self._run_id, intent=intent, result=result)

    def on_order_cancelled(self, ticket, retcode):
        self._store.update_order_status(ticket, "cancelled")

    def on_cycle_complete(self, result, total_pnl):
        self._store.log_cycle(self._run_id, result, total_pnl)

    def on_error(self, where, exc):
        self._store.log_error(self._run_id, where=where, message=f"{type(exc).__name__}: {exc}")


def _to_jsonable(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {str(k): _to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_jsonable(v) for v in obj]
    if isinstance(obj, (str, int, float)) or obj is None:
        return obj
    return str(obj)
