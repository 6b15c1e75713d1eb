"""Flakiness and stability of generated tests across repeated runs."""

from __future__ import annotations

import statistics
from dataclasses import dataclass

from testflow.models.workflow import RunSnapshot

MAX_RUNS = 5
# Largest standard deviation a pass rate in [0, 1] can reasonably show.
MAX_STDDEV = 0.5


@dataclass(frozen=True)
class FlakinessMetrics:
    flakiness: float
    stability: float
    average_pass_rate: float
    run_count: int


def compute_flakiness(current_pass_rate: float, previous_runs: list[RunSnapshot]) -> FlakinessMetrics:
    """Flakiness from the spread of pass rates over the most recent runs.

    The current run plus up to four previous runs (newest first) are used.
    With no previous run the tests are assumed stable.
    """
    if not previous_runs:
        return FlakinessMetrics(flakiness=0.0, stability=1.0, average_pass_rate=current_pass_rate, run_count=1)

    pass_rates = [current_pass_rate] + [run.pass_rate for run in previous_runs][: MAX_RUNS - 1]
    flakiness = min(1.0, statistics.pstdev(pass_rates) / MAX_STDDEV)
    return FlakinessMetrics(
        flakiness=flakiness,
        stability=1.0 - flakiness,
        average_pass_rate=statistics.fmean(pass_rates),
        run_count=len(pass_rates),
    )
