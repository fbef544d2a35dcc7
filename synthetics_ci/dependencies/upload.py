"""Upload of a dependency graph file."""

import logging
import time
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from pathlib import Path

from synthetics_ci.api.base import DependenciesPayload, SyntheticsApi
from synthetics_ci.config import RunConfig
from synthetics_ci.dependencies.retry import (
    FatalFailure,
    RetryableFailure,
    RetryPolicy,
    UploadOutcome,
    run_with_retry,
)
from synthetics_ci.errors import ConfigurationError, UploadError

log = logging.getLogger(__name__)

SUPPORTED_SOURCES = ("snyk",)

INVALID_INPUT_EXIT_CODE = 1
MISSING_FILE_EXIT_CODE = 2
UPLOAD_ERROR_EXIT_CODE = 3

type ApiFactory = Callable[[RunConfig], AbstractAsyncContextManager[SyntheticsApi]]


@dataclass(frozen=True, kw_only=True)
class UploadRequest:
    """Arguments of the upload command."""

    dependencies_file_path: Path
    source: str | None
    service: str | None
    release_version: str | None = None
    dry_run: bool = False


def validate_request(request: UploadRequest, config: RunConfig) -> str | None:
    """Return an error message for invalid input, or None."""
    supported = ", ".join(SUPPORTED_SOURCES)
    if not request.source:
        return f"Missing --source parameter. Supported values are: {supported}"
    if request.source not in SUPPORTED_SOURCES:
        return (
            f"Unsupported value {request.source!r} for --source. "
            f"Supported values are: {supported}"
        )
    if not request.service:
        return "Missing --service parameter"
    try:
        config.require_credentials()
    except ConfigurationError as exc:
        return str(exc)
    return None


def describe_failure(outcome: FatalFailure | RetryableFailure) -> str:
    """Human-readable message for a failed upload."""
    if outcome.error.status == 403:
        return (
            "Failed upload dependencies because of an invalid API or application "
            f"key: {outcome.error}"
        )
    return f"Failed upload dependencies after {outcome.attempts} attempt(s): {outcome.error}"


async def upload_dependencies(
    api: SyntheticsApi, payload: DependenciesPayload, policy: RetryPolicy
) -> UploadOutcome:
    """Upload the payload, retrying transient failures."""

    def on_retry(error: UploadError, attempt: int) -> None:
        log.warning("[attempt %d] Retrying dependencies upload: %s", attempt, error)

    return await run_with_retry(
        lambda: api.upload_dependencies(payload), policy, on_retry=on_retry
    )


async def run_upload(
    request: UploadRequest,
    config: RunConfig,
    api_factory: ApiFactory,
    policy: RetryPolicy | None = None,
) -> int:
    """Validate the request, upload the file and return the exit status."""
    if (message := validate_request(request, config)) is not None:
        log.error("%s", message)
        return INVALID_INPUT_EXIT_CODE

    if not request.release_version:
        log.warning(
            "Missing --release-version parameter: runtime vulnerabilities will not "
            "be associated with a version"
        )

    file_path = request.dependencies_file_path.resolve()
    if not file_path.is_file():
        log.error("Cannot find file %s", file_path)
        return MISSING_FILE_EXIT_CODE

    log.info(
        "Uploading %s (source=%s, service=%s, version=%s)%s",
        file_path,
        request.source,
        request.service,
        request.release_version,
        " [dry run]" if request.dry_run else "",
    )
    if request.dry_run:
        log.info("Dry run: skipping upload")
        return 0

    payload = DependenciesPayload(
        dependencies_file_path=file_path,
        source=request.source or "",
        service=request.service or "",
        version=request.release_version,
    )

    start = time.monotonic()
    async with api_factory(config) as api:
        outcome = await upload_dependencies(api, payload, policy or RetryPolicy())

    if isinstance(outcome, FatalFailure | RetryableFailure):
        log.error("%s", describe_failure(outcome))
        return UPLOAD_ERROR_EXIT_CODE

    log.info("Dependencies uploaded in %.2f seconds", time.monotonic() - start)
    return 0
