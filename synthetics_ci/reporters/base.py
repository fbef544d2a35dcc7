"""Reporter interface and fan-out to several reporters."""

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from synthetics_ci.models.result import PollResult, Summary
from synthetics_ci.models.test import Test


@dataclass(frozen=True, kw_only=True)
class RunStart:
    """Payload of the start event."""

    start_time: float


class Reporter(ABC):
    """Receives the lifecycle events of a run."""

    @abstractmethod
    def log(self, message: str) -> None:
        """Report an informational message."""

    @abstractmethod
    def error(self, message: str) -> None:
        """Report an error message."""

    @abstractmethod
    def report_start(self, start: RunStart) -> None:
        """Report that results are about to be rendered."""

    @abstractmethod
    def test_end(
        self,
        test: Test,
        results: Sequence[PollResult],
        base_url: str,
        location_names: Mapping[int, str],
    ) -> None:
        """Report the final results of one test."""

    @abstractmethod
    def run_end(self, summary: Summary) -> None:
        """Report the run summary."""


@dataclass(frozen=True)
class ReporterGroup(Reporter):
    """Broadcasts every event to its reporters, in registration order."""

    reporters: Sequence[Reporter]

    def log(self, message: str) -> None:
        for reporter in self.reporters:
            reporter.log(message)

    def error(self, message: str) -> None:
        for reporter in self.reporters:
            reporter.error(message)

    def report_start(self, start: RunStart) -> None:
        for reporter in self.reporters:
            reporter.report_start(start)

    def test_end(
        self,
        test: Test,
        results: Sequence[PollResult],
        base_url: str,
        location_names: Mapping[int, str],
    ) -> None:
        for reporter in self.reporters:
            reporter.test_end(test, results, base_url, location_names)

    def run_end(self, summary: Summary) -> None:
        for reporter in self.reporters:
            reporter.run_end(summary)
