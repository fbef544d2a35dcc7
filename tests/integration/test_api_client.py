"""Integration tests for the Synthetics API client."""

import asyncio
import json
import re
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from aiohttp import ClientConnectionError
from aioresponses import aioresponses as aioresponses_cls
from yarl import URL

from synthetics_ci.api.base import DependenciesPayload
from synthetics_ci.api.client import SyntheticsApiClient
from synthetics_ci.config import RunConfig
from synthetics_ci.errors import ConfigurationError, TransportError, UploadError
from synthetics_ci.models.result import ResultState
from synthetics_ci.models.test import ExecutionRule
from synthetics_ci.models.trigger import TriggerResult
from synthetics_ci.poller import ResultPoller
from synthetics_ci.testing.payloads import (
    api_test_payload,
    poll_response,
    poll_result_payload,
    trigger_response,
)

API_HOST = "http://datadog.test"
API_BASE_URL = f"{API_HOST}/api/v1"
POLL_RESULTS_URL = re.compile(
    rf"^{re.escape(API_BASE_URL)}/synthetics/tests/poll_results\?.*$"
)


@pytest.fixture
def config() -> RunConfig:
    """Create test configuration."""
    return RunConfig(
        api_key="test-api-key", app_key="test-app-key", api_host_override=API_HOST
    )


@pytest.fixture
async def client(
    config: RunConfig, aioresponses: aioresponses_cls
) -> AsyncGenerator[SyntheticsApiClient, None]:
    """Create client with managed session."""
    async with SyntheticsApiClient.from_config(config) as impl:
        yield impl


async def test_from_config_requires_credentials() -> None:
    """Refuses to build a client without keys."""
    with pytest.raises(ConfigurationError):
        async with SyntheticsApiClient.from_config(RunConfig()):
            pass


class TestGetTest:
    """Tests for get_test."""

    async def test_returns_test(
        self, client: SyntheticsApiClient, aioresponses: aioresponses_cls
    ) -> None:
        """Parses the test definition."""
        url = f"{API_BASE_URL}/synthetics/tests/abc-def-ghi"
        aioresponses.get(
            url,
            payload=api_test_payload(
                public_id="abc-def-ghi", execution_rule="non_blocking"
            ),
        )

        test = await client.get_test("abc-def-ghi")

        assert test is not None
        assert test.public_id == "abc-def-ghi"
        assert test.execution_rule == ExecutionRule.NON_BLOCKING
        assert test.config.request.url == "https://app.example.com/"

    async def test_sends_keys(
        self, config: RunConfig, aioresponses: aioresponses_cls
    ) -> None:
        """Authenticates with the API and application keys."""
        url = f"{API_BASE_URL}/synthetics/tests/abc"
        aioresponses.get(url, payload=api_test_payload(public_id="abc"))

        async with SyntheticsApiClient.from_config(config) as client:
            await client.get_test("abc")
            headers = client.session.headers

        assert headers["DD-API-KEY"] == "test-api-key"
        assert headers["DD-APPLICATION-KEY"] == "test-app-key"

    async def test_not_found(
        self, client: SyntheticsApiClient, aioresponses: aioresponses_cls
    ) -> None:
        """Returns None on 404."""
        aioresponses.get(f"{API_BASE_URL}/synthetics/tests/missing", status=404)

        assert await client.get_test("missing") is None

    async def test_server_error(
        self, client: SyntheticsApiClient, aioresponses: aioresponses_cls
    ) -> None:
        """Raises TransportError carrying the status on other failures."""
        aioresponses.get(
            f"{API_BASE_URL}/synthetics/tests/abc", status=500, body="internal error"
        )

        with pytest.raises(TransportError) as exc_info:
            await client.get_test("abc")

        assert exc_info.value.status == 500
        assert "internal error" in str(exc_info.value)

    async def test_connection_error(
        self, client: SyntheticsApiClient, aioresponses: aioresponses_cls
    ) -> None:
        """Wraps network errors in TransportError."""
        aioresponses.get(
            f"{API_BASE_URL}/synthetics/tests/abc",
            exception=ClientConnectionError("connection refused"),
        )

        with pytest.raises(TransportError) as exc_info:
            await client.get_test("abc")

        assert exc_info.value.status is None


class TestSearchTests:
    """Tests for search_tests."""

    async def test_returns_matches(
        self, client: SyntheticsApiClient, aioresponses: aioresponses_cls
    ) -> None:
        """Sends the query and parses the hits."""
        aioresponses.get(
            re.compile(rf"^{re.escape(API_BASE_URL)}/synthetics/tests/search\?.*$"),
            payload={
                "tests": [
                    {"public_id": "abc", "name": "Login"},
                    {"public_id": "def", "name": "Checkout"},
                ]
            },
        )

        tests = await client.search_tests("tag:e2e")

        assert [test.public_id for test in tests] == ["abc", "def"]
        ((method, url),) = aioresponses.requests
        assert method == "GET"
        assert url.query["text"] == "tag:e2e"


class TestTriggerTests:
    """Tests for trigger_tests."""

    async def test_posts_payloads(
        self, client: SyntheticsApiClient, aioresponses: aioresponses_cls
    ) -> None:
        """Posts every test payload and parses the trigger response."""
        url = f"{API_BASE_URL}/synthetics/tests/trigger/ci"
        aioresponses.post(url, payload=trigger_response([("abc", "1"), ("abc", "2")]))
        payloads = [{"public_id": "abc", "executionRule": "blocking"}]

        trigger = await client.trigger_tests(payloads)

        assert [r.result_id for r in trigger.results] == ["1", "2"]
        assert trigger.triggered_check_ids == ["abc"]
        assert trigger.location_names() == {30019: "Frankfurt (AWS)"}
        call = aioresponses.requests[("POST", URL(url))][0]
        assert call.kwargs["json"] == {"tests": payloads}

    async def test_failure(
        self, client: SyntheticsApiClient, aioresponses: aioresponses_cls
    ) -> None:
        """Raises TransportError on rejection."""
        aioresponses.post(f"{API_BASE_URL}/synthetics/tests/trigger/ci", status=400)

        with pytest.raises(TransportError) as exc_info:
            await client.trigger_tests([{"public_id": "abc"}])

        assert exc_info.value.status == 400


class TestPollResults:
    """Tests for poll_results."""

    async def test_parses_states(
        self, client: SyntheticsApiClient, aioresponses: aioresponses_cls
    ) -> None:
        """Parses pending, finished and errored results."""
        aioresponses.get(
            POLL_RESULTS_URL,
            payload=poll_response(
                poll_result_payload("1", passed=True),
                poll_result_payload("2", passed=False, event_type="error"),
                poll_result_payload("3", event_type="created"),
            ),
        )

        results = await client.poll_results(["1", "2", "3"])

        assert [r.result.state for r in results] == [
            ResultState.FINISHED,
            ResultState.ERROR,
            ResultState.PENDING,
        ]
        assert results[0].passed
        ((_, url),) = aioresponses.requests
        assert json.loads(url.query["result_ids"]) == ["1", "2", "3"]

    async def test_truncated_body(
        self, client: SyntheticsApiClient, aioresponses: aioresponses_cls
    ) -> None:
        """Wraps an unparsable JSON body in TransportError."""
        aioresponses.get(
            POLL_RESULTS_URL, body='{"results": [', content_type="application/json"
        )

        with pytest.raises(TransportError, match="invalid JSON"):
            await client.poll_results(["1"])

    async def test_malformed_entry(
        self, client: SyntheticsApiClient, aioresponses: aioresponses_cls
    ) -> None:
        """Wraps a response that does not match the poll schema in TransportError."""
        entry = poll_result_payload("1")
        entry["result"]["passed"] = None
        aioresponses.get(POLL_RESULTS_URL, payload=poll_response(entry))

        with pytest.raises(TransportError, match="Malformed poll response"):
            await client.poll_results(["1"])

    @pytest.mark.parametrize(
        "bad_response",
        [
            {"body": '{"results": [', "content_type": "application/json"},
            {"payload": {"results": [{"resultID": "1", "result": {"passed": None}}]}},
        ],
        ids=["truncated", "invalid-entry"],
    )
    async def test_poller_recovers_from_bad_response(
        self,
        client: SyntheticsApiClient,
        aioresponses: aioresponses_cls,
        bad_response: dict[str, Any],
    ) -> None:
        """A bad poll response is retried on the next tick."""
        aioresponses.get(POLL_RESULTS_URL, **bad_response)
        aioresponses.get(POLL_RESULTS_URL, payload=poll_response(poll_result_payload("1")))
        poller = ResultPoller(api=client, poll_interval=0)
        trigger = TriggerResult(public_id="abc", result_id="1", location=30019)

        results = await poller.wait_for_results([trigger], timeout=5)

        assert results["abc"][0].passed is True
        assert results["abc"][0].result.state == ResultState.FINISHED


class TestPresignedUrl:
    """Tests for get_presigned_url."""

    async def test_returns_url(
        self, client: SyntheticsApiClient, aioresponses: aioresponses_cls
    ) -> None:
        """Requests tunnel credentials for every test."""
        aioresponses.get(
            re.compile(rf"^{re.escape(API_BASE_URL)}/synthetics/ci/tunnel\?.*$"),
            payload={"url": "wss://tunnel.datadog.test/ws?sig=xyz"},
        )

        url = await client.get_presigned_url(["abc", "def"])

        assert url == "wss://tunnel.datadog.test/ws?sig=xyz"
        ((_, request_url),) = aioresponses.requests
        assert request_url.query.getall("test_id") == ["abc", "def"]


class TestUploadDependencies:
    """Tests for upload_dependencies."""

    @pytest.fixture
    def payload(self, tmp_path: Path) -> DependenciesPayload:
        """Create upload payload."""
        path = tmp_path / "deps.json"
        path.write_text("{}")
        return DependenciesPayload(
            dependencies_file_path=path, source="snyk", service="web", version="1.0"
        )

    async def test_uploads(
        self,
        client: SyntheticsApiClient,
        aioresponses: aioresponses_cls,
        payload: DependenciesPayload,
    ) -> None:
        """Posts the file to the API host."""
        url = f"{API_HOST}/profiling/v1/dependencies"
        aioresponses.post(url, status=202)

        await client.upload_dependencies(payload)

        assert ("POST", URL(url)) in aioresponses.requests

    async def test_reads_file_off_event_loop(
        self,
        client: SyntheticsApiClient,
        aioresponses: aioresponses_cls,
        payload: DependenciesPayload,
    ) -> None:
        """Reads the dependency file in a worker thread."""
        aioresponses.post(f"{API_HOST}/profiling/v1/dependencies", status=202)

        with patch(
            "synthetics_ci.api.client.asyncio.to_thread", wraps=asyncio.to_thread
        ) as to_thread:
            await client.upload_dependencies(payload)

        to_thread.assert_called_once_with(payload.dependencies_file_path.read_bytes)

    async def test_rejected(
        self,
        client: SyntheticsApiClient,
        aioresponses: aioresponses_cls,
        payload: DependenciesPayload,
    ) -> None:
        """Raises UploadError with the status."""
        aioresponses.post(f"{API_HOST}/profiling/v1/dependencies", status=413)

        with pytest.raises(UploadError) as exc_info:
            await client.upload_dependencies(payload)

        assert exc_info.value.status == 413

class TestSiteHosts:
    """Tests for the hosts each endpoint is sent to."""

    @pytest.fixture
    async def site_client(
        self, aioresponses: aioresponses_cls
    ) -> AsyncGenerator[SyntheticsApiClient, None]:
        """Create client for the US1 site without host override."""
        config = RunConfig(
            api_key="test-api-key", app_key="test-app-key", datadog_site="datadoghq.com"
        )
        async with SyntheticsApiClient.from_config(config) as impl:
            yield impl

    async def test_trigger_uses_intake(
        self, site_client: SyntheticsApiClient, aioresponses: aioresponses_cls
    ) -> None:
        """Triggers go to the Synthetics intake."""
        url = "https://intake.synthetics.datadoghq.com/api/v1/synthetics/tests/trigger/ci"
        aioresponses.post(url, payload=trigger_response([("abc", "1")]))

        await site_client.trigger_tests([{"public_id": "abc"}])

        assert ("POST", URL(url)) in aioresponses.requests

    async def test_presigned_url_uses_intake(
        self, site_client: SyntheticsApiClient, aioresponses: aioresponses_cls
    ) -> None:
        """Tunnel credentials come from the Synthetics intake."""
        aioresponses.get(
            re.compile(
                r"^https://intake\.synthetics\.datadoghq\.com/api/v1/synthetics/ci/tunnel\?.*$"
            ),
            payload={"url": "wss://tunnel.datadoghq.com/ws"},
        )

        assert await site_client.get_presigned_url(["abc"]) == "wss://tunnel.datadoghq.com/ws"

    async def test_reads_use_api_host(
        self, site_client: SyntheticsApiClient, aioresponses: aioresponses_cls
    ) -> None:
        """Test definitions and results are read from the API host."""
        aioresponses.get(
            "https://api.datadoghq.com/api/v1/synthetics/tests/abc",
            payload=api_test_payload(public_id="abc"),
        )
        aioresponses.get(
            re.compile(
                r"^https://api\.datadoghq\.com/api/v1/synthetics/tests/poll_results\?.*$"
            ),
            payload=poll_response(poll_result_payload("1")),
        )

        assert await site_client.get_test("abc") is not None
        assert len(await site_client.poll_results(["1"])) == 1

    async def test_upload_uses_api_host(
        self,
        site_client: SyntheticsApiClient,
        aioresponses: aioresponses_cls,
        tmp_path: Path,
    ) -> None:
        """Dependencies are uploaded to the API host, not the intake."""
        path = tmp_path / "deps.json"
        path.write_text("{}")
        url = "https://api.datadoghq.com/profiling/v1/dependencies"
        aioresponses.post(url, status=202)

        await site_client.upload_dependencies(
            DependenciesPayload(dependencies_file_path=path, source="snyk", service="web")
        )

        assert ("POST", URL(url)) in aioresponses.requests

