"""aiohttp implementation of the Synthetics API."""

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import aiohttp
from pydantic import ValidationError

from synthetics_ci.api.base import DependenciesPayload, SyntheticsApi
from synthetics_ci.config import RunConfig
from synthetics_ci.errors import TransportError, UploadError
from synthetics_ci.models.result import PollResult, PollResultsResponse
from synthetics_ci.models.test import Test, TestSearchEntry
from synthetics_ci.models.trigger import Trigger

log = logging.getLogger(__name__)

REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=60)


@dataclass(frozen=True, kw_only=True)
class SyntheticsApiClient(SyntheticsApi):
    """Synthetics API client over a shared aiohttp session."""

    base_url: str
    intake_url: str
    upload_url: str
    session: aiohttp.ClientSession = field(repr=False)
    proxy: str | None = None

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: RunConfig
    ) -> AsyncGenerator["SyntheticsApiClient", None]:
        """Create client with managed session lifecycle.

        Raises:
            ConfigurationError: If the API or application key is missing

        """
        api_key, app_key = config.require_credentials()
        headers = {
            "DD-API-KEY": api_key,
            "DD-APPLICATION-KEY": app_key,
        }
        async with aiohttp.ClientSession(
            headers=headers, timeout=REQUEST_TIMEOUT
        ) as session:
            yield cls(
                base_url=config.api_base_url,
                intake_url=config.intake_base_url,
                upload_url=config.api_host,
                session=session,
                proxy=config.proxy.url,
            )

    async def search_tests(self, query: str) -> Sequence[TestSearchEntry]:
        """Resolve a search expression to the matching tests."""
        data = await self._request_json(
            "GET", "/synthetics/tests/search", params={"text": query}
        )
        return [TestSearchEntry.model_validate(test) for test in data.get("tests", [])]

    async def get_test(self, public_id: str) -> Test | None:
        """Fetch a test definition, or None when the test does not exist."""
        try:
            data = await self._request_json("GET", f"/synthetics/tests/{public_id}")
        except TransportError as exc:
            if exc.status == 404:
                return None
            raise
        return Test.model_validate(data)

    async def get_presigned_url(self, public_ids: Sequence[str]) -> str:
        """Obtain tunnel rendezvous credentials for the given tests."""
        data = await self._request_json(
            "GET",
            "/synthetics/ci/tunnel",
            params=[("test_id", public_id) for public_id in public_ids],
            base_url=self.intake_url,
        )
        return str(data["url"])

    async def trigger_tests(self, tests: Sequence[Mapping[str, Any]]) -> Trigger:
        """Start execution instances for the given test payloads."""
        data = await self._request_json(
            "POST",
            "/synthetics/tests/trigger/ci",
            body={"tests": list(tests)},
            base_url=self.intake_url,
        )
        return Trigger.model_validate(data)

    async def poll_results(self, result_ids: Sequence[str]) -> Sequence[PollResult]:
        """Fetch the resolution state of the given execution instances."""
        data = await self._request_json(
            "GET",
            "/synthetics/tests/poll_results",
            params={"result_ids": json.dumps(list(result_ids))},
        )
        try:
            return PollResultsResponse.model_validate(data).results
        except ValidationError as exc:
            raise TransportError(f"Malformed poll response: {exc}") from exc

    async def upload_dependencies(self, payload: DependenciesPayload) -> None:
        """Upload a dependency graph file as a multipart form."""
        content = await asyncio.to_thread(payload.dependencies_file_path.read_bytes)

        form = aiohttp.FormData()
        form.add_field("source", payload.source)
        form.add_field("service", payload.service)
        if payload.version:
            form.add_field("version", payload.version)
        form.add_field(
            "file",
            content,
            filename=payload.dependencies_file_path.name,
            content_type="application/json",
        )

        url = f"{self.upload_url}/profiling/v1/dependencies"
        try:
            async with self.session.post(url, data=form, proxy=self.proxy) as response:
                if response.status >= 300:
                    text = await response.text()
                    raise UploadError(
                        f"Failed to upload dependencies: {response.status} {text}",
                        status=response.status,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise UploadError(f"Failed to upload dependencies: {exc}") from exc

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        body: Any = None,
        base_url: str | None = None,
    ) -> dict[str, Any]:
        url = f"{base_url or self.base_url}{path}"
        log.debug("%s %s params=%s", method, url, params)
        try:
            async with self.session.request(
                method, url, params=params, json=body, proxy=self.proxy
            ) as response:
                if response.status >= 300:
                    text = await response.text()
                    raise TransportError(
                        f"{method} {path} failed: {response.status} {text}",
                        status=response.status,
                    )
                try:
                    data: dict[str, Any] = await response.json()
                except ValueError as exc:
                    raise TransportError(
                        f"{method} {path} returned invalid JSON: {exc}",
                        status=response.status,
                    ) from exc
                return data
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc
