"""Models for Synthetic test definitions fetched from the API."""

from collections.abc import Sequence
from enum import StrEnum
from typing import Any

from pydantic import Field

from synthetics_ci.models.base import Model


class ExecutionRule(StrEnum):
    """How a test failure affects the run verdict."""

    BLOCKING = "blocking"
    NON_BLOCKING = "non_blocking"
    SKIPPED = "skipped"


_STRICTNESS = {
    ExecutionRule.BLOCKING: 0,
    ExecutionRule.NON_BLOCKING: 1,
    ExecutionRule.SKIPPED: 2,
}


def strictest_execution_rule(*rules: ExecutionRule | None) -> ExecutionRule:
    """Return the rule that runs the least: skipped > non_blocking > blocking."""
    present = [rule for rule in rules if rule is not None]
    if not present:
        return ExecutionRule.BLOCKING
    return max(present, key=_STRICTNESS.__getitem__)


class CiOptions(Model):
    """CI section of a test's options."""

    execution_rule: ExecutionRule | None = Field(default=None, alias="executionRule")


class TestRequest(Model):
    """Request the test performs; only the URL matters to the CI runner."""

    __test__ = False

    url: str | None = None
    method: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)


class TestConfig(Model):
    """Configuration block of a test."""

    __test__ = False

    request: TestRequest = Field(default_factory=TestRequest)
    assertions: Sequence[Any] = Field(default_factory=list)


class TestOptions(Model):
    """Options of a test, including its CI execution rule."""

    __test__ = False

    ci: CiOptions | None = None
    device_ids: Sequence[str] = Field(default_factory=list)
    tick_every: int | None = None


class Test(Model):
    """Canonical definition of a Synthetic test as known to the service."""

    __test__ = False

    public_id: str
    name: str = ""
    type: str = "api"
    subtype: str | None = None
    status: str | None = None
    locations: Sequence[str] = Field(default_factory=list)
    tags: Sequence[str] = Field(default_factory=list)
    config: TestConfig = Field(default_factory=TestConfig)
    options: TestOptions = Field(default_factory=TestOptions)

    @property
    def execution_rule(self) -> ExecutionRule:
        """Execution rule of the test, blocking unless stated otherwise."""
        if self.options.ci is None or self.options.ci.execution_rule is None:
            return ExecutionRule.BLOCKING
        return self.options.ci.execution_rule

    def with_execution_rule(self, rule: ExecutionRule) -> "Test":
        """Return a copy whose CI options carry the given execution rule."""
        ci = CiOptions(execution_rule=rule)
        return self.model_copy(update={"options": self.options.model_copy(update={"ci": ci})})


class TestSearchEntry(Model):
    """Single hit of a test search."""

    __test__ = False

    public_id: str
    name: str = ""
