"""Selection of the tests to trigger and of their effective overrides."""

import asyncio
import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from synthetics_ci.api.base import SyntheticsApi
from synthetics_ci.models.result import Summary
from synthetics_ci.models.test import ExecutionRule, Test, strictest_execution_rule
from synthetics_ci.models.trigger import ConfigOverride, TriggerConfig
from synthetics_ci.reporters.base import Reporter

log = logging.getLogger(__name__)

TEMPLATE_VARIABLE = re.compile(r"{{\s*([A-Za-z_][A-Za-z0-9_]*)\s*}}")


@dataclass(kw_only=True)
class TestToTrigger:
    """A test about to be triggered with its effective override."""

    __test__ = False

    public_id: str
    config: ConfigOverride

    def to_payload(self) -> dict[str, Any]:
        return {"public_id": self.public_id, **self.config.to_payload()}


@dataclass(kw_only=True)
class Selection:
    """Outcome of test selection."""

    tests: list[Test] = field(default_factory=list)
    to_trigger: list[TestToTrigger] = field(default_factory=list)
    summary: Summary = field(default_factory=Summary)

    @property
    def public_ids(self) -> list[str]:
        return [test.public_id for test in self.tests]


def effective_execution_rule(test: Test, config: ConfigOverride) -> ExecutionRule:
    """Return the strictest of the test's rule and the override's rule."""
    override_rule = ExecutionRule.SKIPPED if config.skip else config.execution_rule
    return strictest_execution_rule(test.execution_rule, override_rule)


def template_context(url: str, environ: Mapping[str, str]) -> dict[str, str]:
    """Variables available to start URL templates, derived from a test URL."""
    parts = urlsplit(url)
    hostname = parts.hostname or ""
    labels = hostname.split(".")
    domain = ".".join(labels[-2:]) if len(labels) >= 2 else hostname
    subdomain = ".".join(labels[:-2])
    port = str(parts.port) if parts.port else ""
    host = parts.netloc.rpartition("@")[2]

    return {
        **environ,
        "DOMAIN": domain,
        "HOST": host,
        "HOSTNAME": hostname,
        "ORIGIN": f"{parts.scheme}://{host}" if parts.scheme else "",
        "PARAMS": f"?{parts.query}" if parts.query else "",
        "PATHNAME": parts.path,
        "PORT": port,
        "PROTOCOL": f"{parts.scheme}:" if parts.scheme else "",
        "SUBDOMAIN": subdomain,
        "URL": url,
    }


def render_start_url(template: str, context: Mapping[str, str]) -> str:
    """Replace {{NAME}} placeholders; unknown names are left verbatim."""
    return TEMPLATE_VARIABLE.sub(
        lambda match: context.get(match.group(1), match.group(0)), template
    )


def effective_override(
    test: Test,
    trigger_config: TriggerConfig,
    global_config: ConfigOverride,
    environ: Mapping[str, str],
) -> ConfigOverride:
    """Merge the global override with the test's, rendering the start URL."""
    config = global_config.merged_with(trigger_config.config)
    if config.start_url and TEMPLATE_VARIABLE.search(config.start_url):
        context = template_context(test.config.request.url or "", environ)
        config = config.model_copy(
            update={"start_url": render_start_url(config.start_url, context)}
        )
    return config


async def get_tests_to_trigger(
    api: SyntheticsApi,
    trigger_configs: Sequence[TriggerConfig],
    global_config: ConfigOverride,
    reporter: Reporter,
    environ: Mapping[str, str] | None = None,
) -> Selection:
    """Fetch the selected tests and drop the missing and skipped ones.

    Raises:
        TransportError: If fetching a test fails for another reason than 404

    """
    environ = environ or {}
    unique: dict[str, TriggerConfig] = {}
    for trigger_config in trigger_configs:
        if trigger_config.id in unique:
            log.debug("Test %s selected more than once", trigger_config.id)
            continue
        unique[trigger_config.id] = trigger_config

    fetched = await asyncio.gather(*(api.get_test(public_id) for public_id in unique))

    selection = Selection()
    for trigger_config, test in zip(unique.values(), fetched, strict=True):
        if test is None:
            selection.summary.not_found += 1
            reporter.error(
                f"Could not find test {trigger_config.id} (from {trigger_config.suite})"
            )
            continue

        config = effective_override(test, trigger_config, global_config, environ)
        rule = effective_execution_rule(test, config)
        if rule == ExecutionRule.SKIPPED:
            selection.summary.skipped += 1
            reporter.log(f"Skipped test {test.public_id} ({test.name})")
            continue

        if rule != test.execution_rule:
            test = test.with_execution_rule(rule)
        selection.tests.append(test)
        selection.to_trigger.append(
            TestToTrigger(
                public_id=test.public_id,
                config=config.model_copy(update={"execution_rule": rule}),
            )
        )

    return selection
