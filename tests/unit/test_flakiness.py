"""Tests for testflow/engine/flakiness.py."""

import pytest

from testflow.engine.flakiness import compute_flakiness
from testflow.models.workflow import RunSnapshot


def _runs(*pass_rates: float) -> list[RunSnapshot]:
    return [
        RunSnapshot(workflow_id=f"wf-{n}", passed=0, failed=0, total=0, coverage=0, pass_rate=rate)
        for n, rate in enumerate(pass_rates)
    ]


class TestComputeFlakiness:
    def test_first_run_is_stable(self):
        metrics = compute_flakiness(0.9, [])
        assert metrics.flakiness == 0.0
        assert metrics.stability == 1.0
        assert metrics.run_count == 1
        assert metrics.average_pass_rate == 0.9

    def test_consistent_runs_are_not_flaky(self):
        metrics = compute_flakiness(1.0, _runs(1.0, 1.0))
        assert metrics.flakiness == 0.0
        assert metrics.run_count == 3

    def test_spread_scales_flakiness(self):
        metrics = compute_flakiness(0.8, _runs(0.6))
        assert metrics.flakiness == pytest.approx(0.2)
        assert metrics.stability == pytest.approx(0.8)
        assert metrics.average_pass_rate == pytest.approx(0.7)

    def test_flakiness_capped_at_one(self):
        metrics = compute_flakiness(1.0, _runs(0.0))
        assert metrics.flakiness == 1.0
        assert metrics.stability == 0.0

    def test_only_most_recent_runs_count(self):
        metrics = compute_flakiness(0.5, _runs(0.5, 0.5, 0.5, 0.5, 0.0, 0.0))
        assert metrics.run_count == 5
        assert metrics.flakiness == 0.0
