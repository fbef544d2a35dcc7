"""Reporter writing run events through logging."""

import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from synthetics_ci.evaluator import has_test_succeeded, is_non_blocking
from synthetics_ci.models.result import PollResult, Summary
from synthetics_ci.models.test import Test
from synthetics_ci.reporters.base import Reporter, RunStart

STATUS_SYMBOLS = {
    "passed": "✓",
    "failed": "✗",
    "failed_non_blocking": "!",
}


@dataclass
class DefaultReporter(Reporter):
    """Logs a line per test and a final summary."""

    logger: logging.Logger = field(
        default_factory=lambda: logging.getLogger("synthetics_ci")
    )
    start_time: float | None = None

    def log(self, message: str) -> None:
        self.logger.info("%s", message.rstrip())

    def error(self, message: str) -> None:
        self.logger.error("%s", message.rstrip())

    def report_start(self, start: RunStart) -> None:
        self.start_time = start.start_time
        self.logger.info("=" * 80)
        self.logger.info("Test Results:")
        self.logger.info("=" * 80)

    def test_end(
        self,
        test: Test,
        results: Sequence[PollResult],
        base_url: str,
        location_names: Mapping[int, str],
    ) -> None:
        if has_test_succeeded(results):
            status = "passed"
        elif is_non_blocking(test):
            status = "failed_non_blocking"
        else:
            status = "failed"

        self.logger.info(
            "%s [%s] %s: %s", STATUS_SYMBOLS[status], test.public_id, test.name, status
        )
        for poll_result in results:
            location = "unknown location"
            if poll_result.dc_id is not None:
                location = location_names.get(poll_result.dc_id, str(poll_result.dc_id))
            outcome = "passed" if poll_result.passed else "failed"
            self.logger.info("  %s - %s", location, outcome)
            if poll_result.result.error:
                self.logger.info("    Error: %s", poll_result.result.error)
            self.logger.info(
                "    View result: %ssynthetics/details/%s?resultId=%s",
                base_url,
                test.public_id,
                poll_result.result_id,
            )

    def run_end(self, summary: Summary) -> None:
        duration = ""
        if self.start_time is not None:
            duration = f" in {time.time() - self.start_time:.1f}s"
        self.logger.info(
            "Run finished%s: %d passed, %d failed (%d non-blocking), "
            "%d skipped, %d not found",
            duration,
            summary.passed,
            summary.failed,
            summary.failed_non_blocking,
            summary.skipped,
            summary.not_found,
        )
