from __future__ import annotations

import sqlite3
import threading
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from agentos.config import CostTrackingConfig, ModelPricing


class CostSink(Protocol):
    def log_call(
        self,
        stage: str,
        model_alias: str,
        input_tokens: int,
        output_tokens: int,
        pricing: ModelPricing,
    ) -> None: ...


def estimate_cost(input_tokens: int, output_tokens: int, pricing: ModelPricing) -> float:
    return (input_tokens / 1000) * pricing.input_per_1k + (
        output_tokens / 1000
    ) * pricing.output_per_1k


@dataclass(slots=True)
class CostRecord:
    date: str
    stage: str
    model_alias: str
    input_tokens: int
    output_tokens: int
    cost: float


@dataclass(slots=True)
class BudgetStatus:
    spend: float
    budget: float
    percent: float
    alert: bool
    over_budget: bool


SCHEMA = """
CREATE TABLE IF NOT EXISTS costs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL DEFAULT (datetime('now')),
    stage TEXT NOT NULL,
    model_alias TEXT NOT NULL,
    input_tokens INTEGER NOT NULL,
    output_tokens INTEGER NOT NULL,
    cost REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_costs_timestamp ON costs(timestamp);
CREATE INDEX IF NOT EXISTS idx_costs_stage ON costs(stage);
CREATE INDEX IF NOT EXISTS idx_costs_model ON costs(model_alias);
"""


class SQLiteCostTracker:
    """Per-call usage ledger stored in a local SQLite database."""

    def __init__(self, db_path: Path | str = ".agentos/costs.db") -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        with closing(self._connect()) as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def log_call(
        self,
        stage: str,
        model_alias: str,
        input_tokens: int,
        output_tokens: int,
        pricing: ModelPricing,
    ) -> None:
        cost = estimate_cost(input_tokens, output_tokens, pricing)
        with self._lock, closing(self._connect()) as conn:
            conn.execute(
                "INSERT INTO costs (stage, model_alias, input_tokens, output_tokens, cost) "
                "VALUES (?, ?, ?, ?, ?)",
                (stage, model_alias, input_tokens, output_tokens, cost),
            )
            conn.commit()

    def current_month_spend(self) -> float:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(cost), 0) FROM costs "
                "WHERE timestamp >= date('now', 'start of month')"
            ).fetchone()
        return float(row[0])

    def daily_report(self, days: int = 7) -> list[CostRecord]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                SELECT date(timestamp), stage, model_alias,
                       SUM(input_tokens), SUM(output_tokens), SUM(cost)
                FROM costs
                WHERE timestamp >= date('now', ?)
                GROUP BY date(timestamp), stage, model_alias
                ORDER BY date(timestamp) DESC, stage, model_alias
                """,
                (f"-{int(days)} days",),
            ).fetchall()
        return [
            CostRecord(
                date=row[0],
                stage=row[1],
                model_alias=row[2],
                input_tokens=int(row[3]),
                output_tokens=int(row[4]),
                cost=float(row[5]),
            )
            for row in rows
        ]

    def stats(self) -> dict[str, Any]:
        with closing(self._connect()) as conn:
            count, total = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(cost), 0) FROM costs"
            ).fetchone()
            breakdown = conn.execute(
                "SELECT stage, model_alias, SUM(cost) FROM costs GROUP BY stage, model_alias"
            ).fetchall()
        by_stage: dict[str, float] = {}
        by_model: dict[str, float] = {}
        for stage, model_alias, cost in breakdown:
            by_stage[stage] = by_stage.get(stage, 0.0) + float(cost)
            by_model[model_alias] = by_model.get(model_alias, 0.0) + float(cost)
        return {
            "total_calls": int(count),
            "total_cost": float(total),
            "by_stage": by_stage,
            "by_model": by_model,
        }

    def is_over_budget(self, monthly_budget: float) -> bool:
        return self.current_month_spend() >= monthly_budget


def check_budget(tracker: SQLiteCostTracker, config: CostTrackingConfig) -> BudgetStatus:
    spend = tracker.current_month_spend()
    budget = config.monthly_budget
    percent = (spend / budget * 100) if budget > 0 else 0.0
    return BudgetStatus(
        spend=spend,
        budget=budget,
        percent=percent,
        alert=budget > 0 and percent >= config.alert_at_percent,
        over_budget=budget > 0 and spend >= budget,
    )
