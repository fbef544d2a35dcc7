"""Pure pass/fail evaluation and display ordering of test outcomes."""

from collections.abc import Mapping, Sequence
from functools import cmp_to_key

from synthetics_ci.models.result import PollResult
from synthetics_ci.models.test import ExecutionRule, Test


def has_test_succeeded(results: Sequence[PollResult]) -> bool:
    """Return True when every location/device result of a test passed.

    Raises:
        ValueError: If no result is given; an empty set has no verdict

    """
    if not results:
        raise ValueError("Cannot evaluate a test without results")
    return all(poll_result.passed for poll_result in results)


def is_non_blocking(test: Test) -> bool:
    """Return True when a failure of the test must not fail the run."""
    return test.execution_rule == ExecutionRule.NON_BLOCKING


def compare_tests_by_outcome(
    test1: Test, test2: Test, results: Mapping[str, Sequence[PollResult]]
) -> int:
    """Order passing tests first, then non-blocking failures, then blocking ones."""
    success1 = has_test_succeeded(results[test1.public_id])
    success2 = has_test_succeeded(results[test2.public_id])

    if success1 == success2:
        non_blocking1 = is_non_blocking(test1)
        non_blocking2 = is_non_blocking(test2)
        if non_blocking1 == non_blocking2:
            return 0
        return -1 if non_blocking1 else 1

    return -1 if success1 else 1


def sort_tests_by_outcome(
    tests: Sequence[Test], results: Mapping[str, Sequence[PollResult]]
) -> list[Test]:
    """Return the tests in display order; ties keep their relative order."""
    return sorted(
        tests,
        key=cmp_to_key(lambda t1, t2: compare_tests_by_outcome(t1, t2, results)),
    )


def is_run_successful(
    tests: Sequence[Test], results: Mapping[str, Sequence[PollResult]]
) -> bool:
    """Return True unless a blocking test failed."""
    return all(
        has_test_succeeded(results[test.public_id]) or is_non_blocking(test)
        for test in tests
    )
