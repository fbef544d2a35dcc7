"""Models for trigger requests and the handles they return."""

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import Field

from synthetics_ci.models.base import Model
from synthetics_ci.models.test import ExecutionRule

MERGED_MAPPING_KEYS = frozenset({"headers", "variables"})


class BasicAuth(Model):
    """Basic-auth credentials injected into a test run."""

    username: str
    password: str


class TunnelInfo(Model):
    """Handle returned by an open tunnel, attached to every triggered test."""

    host: str
    id: str
    private_key: str = Field(alias="privateKey")


class ConfigOverride(Model):
    """Per-run override of a test's execution parameters.

    Every field is optional: only explicitly set fields override the test's
    own configuration.
    """

    allow_insecure_certificates: bool | None = Field(
        default=None, alias="allowInsecureCertificates"
    )
    basic_auth: BasicAuth | None = Field(default=None, alias="basicAuth")
    device_ids: Sequence[str] | None = Field(default=None, alias="deviceIds")
    execution_rule: ExecutionRule | None = Field(default=None, alias="executionRule")
    follow_redirects: bool | None = Field(default=None, alias="followRedirects")
    headers: Mapping[str, str] | None = None
    locations: Sequence[str] | None = None
    polling_timeout: float | None = Field(default=None, alias="pollingTimeout")
    skip: bool | None = None
    start_url: str | None = Field(default=None, alias="startUrl")
    tunnel: TunnelInfo | None = None
    variables: Mapping[str, str] | None = None

    def merged_with(self, other: "ConfigOverride") -> "ConfigOverride":
        """Merge another override on top of this one; the other side wins.

        Mapping fields are merged one level deep instead of being replaced.
        """
        merged: dict[str, Any] = dict(self._explicit_fields())
        for key, value in other._explicit_fields().items():
            current = merged.get(key)
            if key in MERGED_MAPPING_KEYS and current is not None and value is not None:
                merged[key] = {**current, **value}
            else:
                merged[key] = value
        return ConfigOverride.model_validate(merged)

    def _explicit_fields(self) -> Mapping[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}

    def to_payload(self) -> dict[str, Any]:
        """Serialize the fields sent to the trigger endpoint."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"skip", "polling_timeout"},
        )


class TriggerConfig(Model):
    """One test selected to run, as produced by discovery."""

    suite: str
    id: str
    config: ConfigOverride = Field(default_factory=ConfigOverride)


class TriggerResult(Model):
    """One (test, location, device) execution instance created by a trigger."""

    public_id: str
    result_id: str
    location: int
    device: str | None = None


class Location(Model):
    """Location the tests were triggered in."""

    id: int
    display_name: str = ""
    name: str = ""


class Trigger(Model):
    """Response of the trigger endpoint."""

    results: Sequence[TriggerResult] = Field(default_factory=list)
    triggered_check_ids: Sequence[str] = Field(default_factory=list)
    locations: Sequence[Location] = Field(default_factory=list)

    def location_names(self) -> Mapping[int, str]:
        """Map location IDs to their display names."""
        return {location.id: location.display_name for location in self.locations}
