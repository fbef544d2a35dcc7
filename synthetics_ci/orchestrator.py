"""Run orchestration: select, open tunnel, trigger, poll, evaluate, report."""

import logging
import time
import traceback
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from synthetics_ci.api.base import SyntheticsApi
from synthetics_ci.config import RunConfig
from synthetics_ci.errors import SyntheticsError
from synthetics_ci.evaluator import (
    has_test_succeeded,
    is_non_blocking,
    is_run_successful,
    sort_tests_by_outcome,
)
from synthetics_ci.models.result import PollResult, failing_result
from synthetics_ci.models.trigger import Trigger, TriggerConfig, TunnelInfo
from synthetics_ci.poller import POLLING_INTERVAL, ResultPoller
from synthetics_ci.reporters.base import Reporter, RunStart
from synthetics_ci.selection import Selection, get_tests_to_trigger
from synthetics_ci.tunnel import Tunnel

log = logging.getLogger(__name__)

NOT_TRIGGERED_MESSAGE = "No result was triggered for this test"

type TunnelFactory = Callable[[str, Sequence[str], str | None], Tunnel]


def create_tunnel(
    presigned_url: str, test_ids: Sequence[str], proxy: str | None
) -> Tunnel:
    """Create a tunnel for the given tests."""
    return Tunnel(presigned_url=presigned_url, test_ids=test_ids, proxy=proxy)


def format_error(title: str, exc: BaseException) -> str:
    """Render an error with its full traceback for error-path reporting."""
    details = "".join(traceback.format_exception(exc))
    return f"\n ERROR{title} \n{details}\n"


@dataclass(frozen=True, kw_only=True)
class TriggerOrchestrator:
    """Coordinates one run of Synthetic tests from CI."""

    api: SyntheticsApi
    reporter: Reporter
    config: RunConfig
    tunnel_factory: TunnelFactory = create_tunnel
    poll_interval: float = POLLING_INTERVAL
    environ: Mapping[str, str] = field(default_factory=dict)

    async def run(self, trigger_configs: Sequence[TriggerConfig]) -> int:
        """Run the selected tests and return the process exit status.

        Args:
            trigger_configs: Tests selected by the user, with their overrides

        Returns:
            0 when no blocking test failed or nothing had to run, 1 otherwise

        """
        start_time = time.time()

        if not trigger_configs:
            self.reporter.log("No test suites to run.")
            return 0

        try:
            selection = await get_tests_to_trigger(
                self.api,
                trigger_configs,
                self.config.global_config,
                self.reporter,
                self.environ,
            )
        except SyntheticsError as exc:
            self.reporter.error(format_error("", exc))
            return 1

        if not selection.tests:
            self.reporter.log("No test to run.")
            return 0

        tunnel: Tunnel | None = None
        try:
            if self.config.tunnel:
                self.reporter.log(
                    "You are using the tunnel option, the chosen location(s) will be "
                    "overridden by a location in your account region."
                )
                presigned_url = await self.api.get_presigned_url(selection.public_ids)
                tunnel = self.tunnel_factory(
                    presigned_url, selection.public_ids, self.config.proxy.url
                )
                try:
                    tunnel_info = await tunnel.start()
                except Exception as exc:
                    self.reporter.error(format_error(" on tunnel start", exc))
                    return 1
                self._attach_tunnel(selection, tunnel_info)

            trigger = await self._trigger(selection)

            poller = ResultPoller(api=self.api, poll_interval=self.poll_interval)
            results = await poller.wait_for_results(
                trigger.results,
                self.config.polling_timeout,
                self._polling_timeouts(selection),
            )

            return self._report(selection, trigger, results, start_time)
        except Exception as exc:
            self.reporter.error(format_error("", exc))
            return 1
        finally:
            if tunnel is not None:
                await tunnel.stop()

    def _attach_tunnel(self, selection: Selection, tunnel_info: TunnelInfo) -> None:
        """Route every test through the tunnel, dropping location overrides."""
        for test_to_trigger in selection.to_trigger:
            update: dict[str, object] = {"tunnel": tunnel_info}
            if test_to_trigger.config.locations:
                log.warning(
                    "Ignoring locations %s of test %s: the tunnel location is used",
                    ", ".join(test_to_trigger.config.locations),
                    test_to_trigger.public_id,
                )
                update["locations"] = None
            test_to_trigger.config = test_to_trigger.config.model_copy(update=update)

    async def _trigger(self, selection: Selection) -> Trigger:
        log.info("Triggering %d test(s)...", len(selection.to_trigger))
        trigger = await self.api.trigger_tests(
            [test_to_trigger.to_payload() for test_to_trigger in selection.to_trigger]
        )
        if not trigger.results:
            raise SyntheticsError("No result to poll.")
        log.info(
            "Triggered %d execution(s) of %d test(s)",
            len(trigger.results),
            len(trigger.triggered_check_ids),
        )
        return trigger

    def _polling_timeouts(self, selection: Selection) -> dict[str, float]:
        return {
            test_to_trigger.public_id: test_to_trigger.config.polling_timeout
            for test_to_trigger in selection.to_trigger
            if test_to_trigger.config.polling_timeout is not None
        }

    def _report(
        self,
        selection: Selection,
        trigger: Trigger,
        results: dict[str, list[PollResult]],
        start_time: float,
    ) -> int:
        """Evaluate the results, report them in display order, return the status."""
        for test in selection.tests:
            if test.public_id not in results:
                self.reporter.error(f"No result was triggered for test {test.public_id}")
                results[test.public_id] = [
                    failing_result(NOT_TRIGGERED_MESSAGE, "", 0, None)
                ]

        summary = selection.summary
        location_names = trigger.location_names()

        self.reporter.report_start(RunStart(start_time=start_time))
        for test in sort_tests_by_outcome(selection.tests, results):
            test_results = results[test.public_id]
            if has_test_succeeded(test_results):
                summary.passed += 1
            else:
                summary.failed += 1
                if is_non_blocking(test):
                    summary.failed_non_blocking += 1

            self.reporter.test_end(
                test, test_results, self.config.app_base_url, location_names
            )
        self.reporter.run_end(summary)

        return 0 if is_run_successful(selection.tests, results) else 1
