"""Resolution of suite files, search queries and public IDs into tests to run."""

import asyncio
import glob
import logging
from collections.abc import Sequence
from pathlib import Path

from pydantic import Field, ValidationError

from synthetics_ci.api.base import SyntheticsApi
from synthetics_ci.errors import DiscoveryError
from synthetics_ci.models.base import Model
from synthetics_ci.models.trigger import ConfigOverride, TriggerConfig
from synthetics_ci.reporters.base import Reporter

log = logging.getLogger(__name__)

CLI_SUITE = "CLI Suite"
EXCLUDED_DIRECTORIES = frozenset({"node_modules"})


class SuiteTest(Model):
    """Test entry of a suite file."""

    id: str
    config: ConfigOverride = Field(default_factory=ConfigOverride)


class SuiteContent(Model):
    """Content of a suite file."""

    tests: Sequence[SuiteTest] = Field(default_factory=list)


class Suite(Model):
    """A parsed suite file."""

    name: str
    content: SuiteContent


def find_suite_files(pattern: str, root: Path | None = None) -> list[Path]:
    """Resolve a recursive glob, skipping excluded directories."""
    matches = glob.glob(pattern, root_dir=root, recursive=True)
    base = root or Path()
    return sorted(
        base / match
        for match in matches
        if not EXCLUDED_DIRECTORIES.intersection(Path(match).parts)
    )


def read_suite(path: Path) -> Suite:
    """Parse one suite file.

    Raises:
        DiscoveryError: If the file cannot be read or is not a valid suite

    """
    try:
        content = SuiteContent.model_validate_json(path.read_text())
    except (OSError, ValidationError) as exc:
        raise DiscoveryError(path, str(exc)) from exc
    return Suite(name=str(path), content=content)


def get_suites(
    pattern: str, reporter: Reporter, root: Path | None = None
) -> list[Suite]:
    """Parse every suite file matching the pattern.

    Invalid files are reported and skipped without affecting the others.
    """
    suites: list[Suite] = []
    for path in find_suite_files(pattern, root):
        try:
            suites.append(read_suite(path))
        except DiscoveryError as exc:
            reporter.error(str(exc))
    log.debug("Pattern %s matched %d suite(s)", pattern, len(suites))
    return suites


async def discover_tests(
    patterns: Sequence[str], reporter: Reporter, root: Path | None = None
) -> list[TriggerConfig]:
    """Collect the tests of every suite file matching the patterns."""
    per_pattern = await asyncio.gather(
        *(asyncio.to_thread(get_suites, pattern, reporter, root) for pattern in patterns)
    )
    return [
        TriggerConfig(suite=suite.name, id=test.id, config=test.config)
        for suites in per_pattern
        for suite in suites
        for test in suite.content.tests
    ]


async def search_tests(api: SyntheticsApi, query: str) -> list[TriggerConfig]:
    """Select the tests matching a search query."""
    tests = await api.search_tests(query)
    return [TriggerConfig(suite=f"Query: {query}", id=test.public_id) for test in tests]


async def resolve_tests_to_trigger(
    api: SyntheticsApi,
    *,
    public_ids: Sequence[str],
    search_query: str | None,
    files: Sequence[str],
    reporter: Reporter,
    root: Path | None = None,
) -> list[TriggerConfig]:
    """Resolve the selected tests.

    Explicit public IDs win over a search query, which wins over suite files.
    """
    if public_ids:
        return [TriggerConfig(suite=CLI_SUITE, id=public_id) for public_id in public_ids]
    if search_query:
        return await search_tests(api, search_query)
    return await discover_tests(files, reporter, root)
