"""Polling of triggered execution instances until they resolve or time out."""

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from synthetics_ci.api.base import SyntheticsApi
from synthetics_ci.errors import TransportError
from synthetics_ci.models.result import PollResult, failing_result
from synthetics_ci.models.trigger import TriggerResult

log = logging.getLogger(__name__)

POLLING_INTERVAL = 5.0
TIMEOUT_MESSAGE = "Timeout"


@dataclass(frozen=True, kw_only=True)
class ResultPoller:
    """Waits for the results of triggered tests."""

    api: SyntheticsApi
    poll_interval: float = POLLING_INTERVAL

    async def wait_for_results(
        self,
        trigger_results: Sequence[TriggerResult],
        timeout: float,
        polling_timeouts: Mapping[str, float] | None = None,
    ) -> dict[str, list[PollResult]]:
        """Poll until every instance resolved or its deadline elapsed.

        Transport errors and malformed responses on a poll are logged and
        retried on the next tick. Instances still outstanding at their deadline
        get a synthetic failed result, so every triggered test has results.

        Args:
            trigger_results: Execution instances returned by the trigger call
            timeout: Seconds to wait, measured from the start of the loop
            polling_timeouts: Per-test deadlines in seconds, by public ID

        Returns:
            Results grouped by public ID, in trigger order

        """
        polling_timeouts = polling_timeouts or {}
        pending = {trigger.result_id: trigger for trigger in trigger_results}
        deadlines = {
            result_id: polling_timeouts.get(trigger.public_id, timeout)
            for result_id, trigger in pending.items()
        }
        resolved: dict[str, PollResult] = {}
        start = asyncio.get_event_loop().time()

        while outstanding := [rid for rid in pending if rid not in resolved]:
            elapsed = asyncio.get_event_loop().time() - start
            for result_id in outstanding:
                if elapsed >= deadlines[result_id]:
                    trigger = pending[result_id]
                    log.warning(
                        "Result %s of test %s timed out after %.1fs",
                        result_id,
                        trigger.public_id,
                        elapsed,
                    )
                    resolved[result_id] = failing_result(
                        TIMEOUT_MESSAGE,
                        result_id,
                        trigger.location,
                        trigger.device,
                    )

            outstanding = [rid for rid in outstanding if rid not in resolved]
            if not outstanding:
                break

            log.info("Waiting for %d/%d result(s)...", len(outstanding), len(pending))
            resolved.update(await self._poll_once(outstanding))

            if all(rid in resolved for rid in pending):
                break

            await asyncio.sleep(self.poll_interval)

        results: dict[str, list[PollResult]] = {}
        for result_id, trigger in pending.items():
            results.setdefault(trigger.public_id, []).append(resolved[result_id])
        return results

    async def _poll_once(self, outstanding: Sequence[str]) -> dict[str, PollResult]:
        """Return the newly resolved results among the outstanding ones."""
        try:
            poll_results = await self.api.poll_results(outstanding)
        except (TransportError, ValueError) as exc:
            log.warning("Polling results failed, retrying on next tick: %s", exc)
            return {}

        wanted = set(outstanding)
        return {
            poll_result.result_id: poll_result
            for poll_result in poll_results
            if poll_result.result_id in wanted and poll_result.is_resolved
        }
