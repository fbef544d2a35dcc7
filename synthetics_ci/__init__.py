"""Trigger Synthetic tests from CI and wait for their verdicts."""
