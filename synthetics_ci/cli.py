"""CLI entry point for triggering Synthetic tests from CI."""

import argparse
import asyncio
import logging
import os
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path

from synthetics_ci.api.client import SyntheticsApiClient
from synthetics_ci.config import RunConfig, load_config
from synthetics_ci.dependencies.upload import UploadRequest, run_upload
from synthetics_ci.discovery import resolve_tests_to_trigger
from synthetics_ci.errors import ConfigurationError, SyntheticsError
from synthetics_ci.orchestrator import TriggerOrchestrator, format_error
from synthetics_ci.reporters import DefaultReporter, Reporter, ReporterGroup

DEFAULT_CONFIG_PATH = Path("datadog-ci.json")


async def run_tests(
    config: RunConfig,
    *,
    public_ids: Sequence[str] = (),
    search_query: str | None = None,
    files: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
    reporters: Sequence[Reporter] | None = None,
) -> int:
    """Run Synthetic tests and return exit code."""
    reporter = ReporterGroup(reporters or [DefaultReporter()])

    try:
        async with SyntheticsApiClient.from_config(config) as api:
            trigger_configs = await resolve_tests_to_trigger(
                api,
                public_ids=public_ids,
                search_query=search_query,
                files=files or config.files,
                reporter=reporter,
            )
            orchestrator = TriggerOrchestrator(
                api=api,
                reporter=reporter,
                config=config,
                environ=dict(environ or {}),
            )
            return await orchestrator.run(trigger_configs)
    except ConfigurationError as exc:
        reporter.error(str(exc))
        return 1
    except SyntheticsError as exc:
        reporter.error(format_error("", exc))
        return 1


async def run_dependencies_upload(args: argparse.Namespace, config: RunConfig) -> int:
    """Upload a dependency graph and return exit code."""
    request = UploadRequest(
        dependencies_file_path=args.dependencies_file,
        source=args.source,
        service=args.service,
        release_version=args.release_version,
        dry_run=args.dry_run,
    )
    return await run_upload(request, config, SyntheticsApiClient.from_config)


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        prog="synthetics-ci", description="Run Synthetic tests from CI"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    run_parser = commands.add_parser("run-tests", help="Trigger tests and wait")
    run_parser.add_argument("--api-key", help="API key (DATADOG_API_KEY)")
    run_parser.add_argument("--app-key", help="Application key (DATADOG_APP_KEY)")
    run_parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to the JSON config file",
    )
    run_parser.add_argument(
        "-p",
        "--public-id",
        dest="public_ids",
        action="append",
        default=[],
        help="Public ID of a test to run, repeatable",
    )
    run_parser.add_argument("-s", "--search", help="Search query selecting tests")
    run_parser.add_argument(
        "-t",
        "--tunnel",
        action="store_true",
        default=None,
        help="Open a tunnel so tests can reach the local network",
    )
    run_parser.add_argument(
        "-f",
        "--files",
        action="append",
        help="Glob of suite files, repeatable",
    )

    deps_parser = commands.add_parser("dependencies", help="Dependency graphs")
    deps_commands = deps_parser.add_subparsers(dest="dependencies_command", required=True)
    upload_parser = deps_commands.add_parser("upload", help="Upload a dependency graph")
    upload_parser.add_argument("dependencies_file", type=Path)
    upload_parser.add_argument("--source", help="Tool that produced the file")
    upload_parser.add_argument("--service", help="Service the dependencies belong to")
    upload_parser.add_argument("--release-version", help="Version of the service")
    upload_parser.add_argument(
        "--dry-run", action="store_true", help="Validate without uploading"
    )

    return parser


async def dispatch(args: argparse.Namespace, environ: Mapping[str, str]) -> int:
    """Build the configuration once and run the selected command."""
    log = logging.getLogger("synthetics_ci")

    try:
        if args.command == "run-tests":
            config = load_config(
                args.config,
                environ=environ,
                api_key=args.api_key,
                app_key=args.app_key,
                tunnel=args.tunnel,
            )
        else:
            config = load_config(environ=environ)
    except ConfigurationError as exc:
        log.error("%s", exc)
        return 1

    if args.command == "run-tests":
        return await run_tests(
            config,
            public_ids=args.public_ids,
            search_query=args.search,
            files=args.files,
            environ=environ,
        )
    return await run_dependencies_upload(args, config)


def main() -> None:
    """CLI entry point."""
    args = build_parser().parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    exit_code = asyncio.run(dispatch(args, os.environ))
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
