"""Remote API used to trigger and poll Synthetic tests."""

from synthetics_ci.api.base import SyntheticsApi
from synthetics_ci.api.client import SyntheticsApiClient

__all__ = ["SyntheticsApi", "SyntheticsApiClient"]
