"""
Test runner that reports results without executing the generated tests.

Running generated suites needs a sandbox per language, which this service
does not provide. :class:`SimulatedTestRunner` instead reports a plausible
outcome for the generated test count and marks it ``simulated`` so that
ticket text and reward components can tell it apart from a real run.
"""

import random

import structlog

from testflow.models.domain import CodeContext, GeneratedTests, TestRunResult
from testflow.providers.base import TestRunner

log = structlog.get_logger(__name__)

DEFAULT_TEST_COUNT = 5
PASS_RATE_RANGE = (0.85, 0.95)
COVERAGE_RANGE = (70.0, 95.0)
SECONDS_PER_TEST = 0.05


class SimulatedTestRunner(TestRunner):
    """Report simulated results for generated tests.

    Args:
        seed: Seed for the result generator, for reproducible results.
    """

    def __init__(self, seed: int | None = None) -> None:
        self._random = random.Random(seed)  # nosec B311 # not used for security

    async def run_tests(self, tests: GeneratedTests, context: CodeContext) -> TestRunResult:
        if not tests.code.strip():
            return TestRunResult(passed=0, failed=0, simulated=True)

        total = tests.test_count or DEFAULT_TEST_COUNT
        pass_rate = self._random.uniform(*PASS_RATE_RANGE)
        passed = int(total * pass_rate)
        result = TestRunResult(
            passed=passed,
            failed=total - passed,
            coverage=round(self._random.uniform(*COVERAGE_RANGE)),
            duration_seconds=round(total * SECONDS_PER_TEST + self._random.uniform(0, 0.2), 3),
            simulated=True,
        )
        log.info(
            "tests_reported",
            passed=result.passed,
            failed=result.failed,
            coverage=result.coverage,
            simulated=True,
            language=tests.language,
        )
        return result
