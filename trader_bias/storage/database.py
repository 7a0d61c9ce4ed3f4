# trader_bias/storage/database.py
import asyncio
import logging
import sqlite3
import time
from typing import Any

import aiosqlite

from trader_bias.config import PersistenceConfig
from trader_bias.errors import StoreDegraded
from trader_bias.metrics import Counters

from .models import NEUTRAL, Prediction, ProjectionCycle

logger = logging.getLogger(__name__)

PREDICTION_COLUMNS = """id, coin, projection_type, predicted_direction, strength, score,
    emitted_at, horizon_ms, reference_price, evaluated_at, actual_price_change_pct,
    outcome, evaluated"""

CYCLE_COLUMNS = "coin, projection_type, fired_at, status, reason, score, prediction_id, id"


def _to_prediction(row: Any) -> Prediction:
    return Prediction(*row[:-1], evaluated=bool(row[-1]))


class PredictionStore:
    """SQLite prediction log.

    Writes go through one lock and are retried; after the retries are spent the
    store turns DEGRADED and rejects writes until a probe succeeds. Reads are
    always served.
    """

    def __init__(
        self,
        path: str,
        persistence: PersistenceConfig | None = None,
        counters: Counters | None = None,
    ):
        persistence = persistence or PersistenceConfig()
        self.path = path
        self.retries = persistence.retries
        self.retry_backoff_s = persistence.retry_backoff_ms / 1000
        self.counters = counters or Counters()
        self.conn: aiosqlite.Connection | None = None
        self.degraded_since: float | None = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        self.conn = await aiosqlite.connect(self.path)
        await self._create_tables()

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def _create_tables(self) -> None:
        assert self.conn is not None
        await self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS predictions (
                id TEXT PRIMARY KEY,
                coin TEXT NOT NULL,
                projection_type TEXT NOT NULL,
                predicted_direction TEXT NOT NULL,
                strength TEXT NOT NULL,
                score REAL NOT NULL,
                emitted_at INTEGER NOT NULL,
                horizon_ms INTEGER NOT NULL CHECK (horizon_ms > 0),
                reference_price REAL NOT NULL CHECK (reference_price > 0),
                evaluated_at INTEGER,
                actual_price_change_pct REAL,
                outcome TEXT,
                evaluated INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE INDEX IF NOT EXISTS idx_predictions_coin_time
                ON predictions(coin, emitted_at);
            CREATE INDEX IF NOT EXISTS idx_predictions_pending
                ON predictions(evaluated, emitted_at);

            CREATE TABLE IF NOT EXISTS projection_cycles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                coin TEXT NOT NULL,
                projection_type TEXT NOT NULL,
                fired_at INTEGER NOT NULL,
                status TEXT NOT NULL,
                reason TEXT,
                score REAL,
                prediction_id TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE INDEX IF NOT EXISTS idx_cycles_time ON projection_cycles(fired_at);
        """)
        await self.conn.commit()

    # ------------------------------------------------------------ health

    @property
    def degraded(self) -> bool:
        return self.degraded_since is not None

    def degraded_for_s(self) -> float:
        if self.degraded_since is None:
            return 0.0
        return time.monotonic() - self.degraded_since

    def health(self) -> dict[str, Any]:
        return {
            "state": "DEGRADED" if self.degraded else "OK",
            "degradedForSec": round(self.degraded_for_s(), 1),
        }

    async def probe(self) -> bool:
        """Try a write transaction; leave DEGRADED when it succeeds."""
        assert self.conn is not None
        async with self._lock:
            try:
                await self.conn.rollback()
                await self.conn.execute("BEGIN IMMEDIATE")
                await self.conn.rollback()
            except sqlite3.Error as e:
                logger.warning(f"Prediction store probe failed: {e}")
                return False
        if self.degraded_since is not None:
            logger.info("Prediction store recovered, accepting writes")
            self.degraded_since = None
        return True

    async def _write(self, sql: str, params: tuple) -> tuple[int, int | None]:
        """Execute one statement. Returns (rowcount, lastrowid)."""
        assert self.conn is not None
        if self.degraded:
            self.counters.inc("writes_rejected")
            raise StoreDegraded("prediction store is degraded; write rejected")

        last_error: Exception | None = None
        async with self._lock:
            for attempt in range(self.retries + 1):
                if attempt:
                    await asyncio.sleep(self.retry_backoff_s)
                try:
                    cursor = await self.conn.execute(sql, params)
                    await self.conn.commit()
                    return cursor.rowcount, cursor.lastrowid
                except sqlite3.IntegrityError:
                    raise
                except sqlite3.Error as e:
                    last_error = e
                    self.counters.inc("persistence_errors")
                    logger.warning(f"Prediction write failed ({attempt + 1}/{self.retries + 1}): {e}")
                    await self._rollback()

            self.degraded_since = time.monotonic()
        logger.error(f"Prediction store DEGRADED after {self.retries} retries: {last_error}")
        raise StoreDegraded(f"write failed after {self.retries} retries: {last_error}") from last_error

    async def _rollback(self) -> None:
        assert self.conn is not None
        try:
            await self.conn.rollback()
        except sqlite3.Error as e:
            logger.debug(f"Rollback failed: {e}")

    # ------------------------------------------------------------ predictions

    async def insert_prediction(self, prediction: Prediction) -> bool:
        """Append a prediction. Returns False if the id already exists."""
        if prediction.predicted_direction == NEUTRAL:
            raise ValueError("NEUTRAL predictions are never stored")
        if not prediction.reference_price or prediction.reference_price <= 0:
            raise ValueError(f"reference price must be positive: {prediction.reference_price}")
        if prediction.horizon_ms <= 0:
            raise ValueError(f"horizon must be positive: {prediction.horizon_ms}")

        rowcount, _ = await self._write(
            """INSERT OR IGNORE INTO predictions (id, coin, projection_type,
                   predicted_direction, strength, score, emitted_at, horizon_ms,
                   reference_price, evaluated)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0)""",
            (
                prediction.id,
                prediction.coin,
                prediction.projection_type,
                prediction.predicted_direction,
                prediction.strength,
                prediction.score,
                prediction.emitted_at,
                prediction.horizon_ms,
                prediction.reference_price,
            ),
        )
        if rowcount:
            self.counters.inc("predictions_emitted")
        return rowcount > 0

    async def get_prediction(self, prediction_id: str) -> Prediction | None:
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"SELECT {PREDICTION_COLUMNS} FROM predictions WHERE id = ?", (prediction_id,)
        )
        row = await cursor.fetchone()
        return _to_prediction(row) if row else None

    async def list_predictions(
        self,
        coin: str | None = None,
        projection_type: str | None = None,
        start: int | None = None,
        end: int | None = None,
        outcome: str | None = None,
        evaluated: bool | None = None,
        limit: int | None = None,
        ascending: bool = False,
    ) -> list[Prediction]:
        assert self.conn is not None
        clauses: list[str] = []
        params: list[Any] = []
        if coin is not None:
            clauses.append("coin = ?")
            params.append(coin)
        if projection_type is not None:
            clauses.append("projection_type = ?")
            params.append(projection_type)
        if start is not None:
            clauses.append("emitted_at >= ?")
            params.append(start)
        if end is not None:
            clauses.append("emitted_at <= ?")
            params.append(end)
        if outcome is not None:
            clauses.append("outcome = ?")
            params.append(outcome)
        if evaluated is not None:
            clauses.append("evaluated = ?")
            params.append(int(evaluated))

        sql = f"SELECT {PREDICTION_COLUMNS} FROM predictions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY emitted_at {'ASC' if ascending else 'DESC'}, id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        cursor = await self.conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [_to_prediction(row) for row in rows]

    async def pending_due(self, now_ms: int) -> list[Prediction]:
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"""SELECT {PREDICTION_COLUMNS} FROM predictions
               WHERE evaluated = 0 AND emitted_at + horizon_ms <= ?
               ORDER BY emitted_at""",
            (now_ms,),
        )
        rows = await cursor.fetchall()
        return [_to_prediction(row) for row in rows]

    async def record_evaluation(
        self,
        prediction_id: str,
        evaluated_at: int,
        actual_price_change_pct: float | None,
        outcome: str,
    ) -> bool:
        """Set the evaluation once. Returns False if it was already evaluated."""
        rowcount, _ = await self._write(
            """UPDATE predictions
               SET evaluated = 1, evaluated_at = ?, actual_price_change_pct = ?, outcome = ?
               WHERE id = ? AND evaluated = 0""",
            (evaluated_at, actual_price_change_pct, outcome, prediction_id),
        )
        if rowcount:
            self.counters.inc("predictions_evaluated")
        return rowcount > 0

    # ------------------------------------------------------------ cycles

    async def record_cycle(self, cycle: ProjectionCycle) -> int:
        _, row_id = await self._write(
            """INSERT INTO projection_cycles (coin, projection_type, fired_at, status,
                   reason, score, prediction_id)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                cycle.coin,
                cycle.projection_type,
                cycle.fired_at,
                cycle.status,
                cycle.reason,
                cycle.score,
                cycle.prediction_id,
            ),
        )
        return row_id or 0

    async def list_cycles(self, limit: int = 100) -> list[ProjectionCycle]:
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"SELECT {CYCLE_COLUMNS} FROM projection_cycles ORDER BY fired_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [ProjectionCycle(*row) for row in rows]
