"""Reporters receiving run lifecycle events."""

from synthetics_ci.reporters.base import Reporter, ReporterGroup, RunStart
from synthetics_ci.reporters.default import DefaultReporter

__all__ = ["DefaultReporter", "Reporter", "ReporterGroup", "RunStart"]
