"""Abstract interface of the remote Synthetics API."""

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from synthetics_ci.models.result import PollResult
from synthetics_ci.models.test import Test, TestSearchEntry
from synthetics_ci.models.trigger import Trigger


@dataclass(frozen=True, kw_only=True)
class DependenciesPayload:
    """Dependency graph file and the service it belongs to."""

    dependencies_file_path: Path
    source: str
    service: str
    version: str | None = None


class SyntheticsApi(ABC):
    """Network calls consumed by a test run.

    Every method raises TransportError on network or HTTP failure.
    """

    @abstractmethod
    async def search_tests(self, query: str) -> Sequence[TestSearchEntry]:
        """Resolve a search expression to the matching tests."""

    @abstractmethod
    async def get_test(self, public_id: str) -> Test | None:
        """Fetch a test definition, or None when the test does not exist."""

    @abstractmethod
    async def get_presigned_url(self, public_ids: Sequence[str]) -> str:
        """Obtain tunnel rendezvous credentials for the given tests."""

    @abstractmethod
    async def trigger_tests(self, tests: Sequence[Mapping[str, Any]]) -> Trigger:
        """Start execution instances for the given test payloads.

        Not idempotent: every call creates new instances.
        """

    @abstractmethod
    async def poll_results(self, result_ids: Sequence[str]) -> Sequence[PollResult]:
        """Fetch the resolution state of the given execution instances."""

    @abstractmethod
    async def upload_dependencies(self, payload: DependenciesPayload) -> None:
        """Upload a dependency graph file."""
