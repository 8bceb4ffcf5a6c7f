from pathlib import Path

import pytest

from agentos.config import CostTrackingConfig, ModelPricing
from agentos.llm.cost_tracker import SQLiteCostTracker, check_budget, estimate_cost

PRICING = ModelPricing(input_per_1k=0.005, output_per_1k=0.015)


def test_estimate_cost_uses_per_thousand_pricing() -> None:
    assert estimate_cost(2000, 1000, PRICING) == pytest.approx(0.025)
    assert estimate_cost(0, 0, PRICING) == 0


def test_tracker_aggregates_calls(tmp_path: Path) -> None:
    tracker = SQLiteCostTracker(tmp_path / "nested" / "costs.db")
    tracker.log_call("parse", "minimax", 1000, 1000, PRICING)
    tracker.log_call("execute", "kimi-k2", 2000, 0, PRICING)
    tracker.log_call("execute", "minimax", 0, 2000, PRICING)

    stats = tracker.stats()

    assert stats["total_calls"] == 3
    assert stats["total_cost"] == pytest.approx(0.02 + 0.01 + 0.03)
    assert stats["by_stage"]["execute"] == pytest.approx(0.04)
    assert stats["by_model"]["minimax"] == pytest.approx(0.05)
    assert tracker.current_month_spend() == pytest.approx(0.06)

    report = tracker.daily_report(7)
    assert {(row.stage, row.model_alias) for row in report} == {
        ("parse", "minimax"),
        ("execute", "kimi-k2"),
        ("execute", "minimax"),
    }
    assert sum(row.input_tokens for row in report) == 3000


def test_tracker_persists_across_instances(tmp_path: Path) -> None:
    SQLiteCostTracker(tmp_path / "costs.db").log_call("parse", "minimax", 1000, 0, PRICING)

    reopened = SQLiteCostTracker(tmp_path / "costs.db")

    assert reopened.stats()["total_calls"] == 1


def test_check_budget_thresholds(tmp_path: Path) -> None:
    tracker = SQLiteCostTracker(tmp_path / "costs.db")
    config = CostTrackingConfig(monthly_budget=1.0, alert_at_percent=50)

    fresh = check_budget(tracker, config)
    assert (fresh.alert, fresh.over_budget) == (False, False)

    tracker.log_call("execute", "kimi-k2", 100_000, 0, PRICING)
    warned = check_budget(tracker, config)
    assert warned.percent == pytest.approx(50.0)
    assert (warned.alert, warned.over_budget) == (True, False)

    tracker.log_call("execute", "kimi-k2", 100_000, 0, PRICING)
    exhausted = check_budget(tracker, config)
    assert exhausted.over_budget is True
    assert tracker.is_over_budget(config.monthly_budget) is True


def test_zero_budget_never_alerts(tmp_path: Path) -> None:
    tracker = SQLiteCostTracker(tmp_path / "costs.db")
    tracker.log_call("execute", "kimi-k2", 100_000, 0, PRICING)

    status = check_budget(tracker, CostTrackingConfig(monthly_budget=0.0))

    assert (status.alert, status.over_budget, status.percent) == (False, False, 0.0)
