"""Run configuration, resolved once at start-up and passed explicitly."""

import logging
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from synthetics_ci.errors import ConfigurationError
from synthetics_ci.models.trigger import ConfigOverride

log = logging.getLogger(__name__)

DEFAULT_FILES = ("**/*.synthetics.json",)
DEFAULT_POLLING_TIMEOUT = 2 * 60
INTAKE_SITES = frozenset({"datadoghq.com", "datad0g.com"})

ENVIRONMENT_KEYS: Mapping[str, str] = {
    "DATADOG_API_KEY": "api_key",
    "DATADOG_APP_KEY": "app_key",
    "DATADOG_SITE": "datadog_site",
    "DATADOG_SUBDOMAIN": "subdomain",
    "DD_API_HOST_OVERRIDE": "api_host_override",
}


class ProxyAuth(BaseModel):
    """Credentials for an authenticating proxy."""

    username: str
    password: SecretStr


class ProxyConfig(BaseModel):
    """Corporate proxy used for API calls and the tunnel connection."""

    model_config = ConfigDict(frozen=True)

    protocol: Literal["http", "https"] = "http"
    host: str | None = None
    port: int | None = None
    auth: ProxyAuth | None = None

    @property
    def url(self) -> str | None:
        """Proxy URL usable by aiohttp, or None when no proxy is configured."""
        if not self.host:
            return None
        credentials = ""
        if self.auth is not None:
            credentials = f"{self.auth.username}:{self.auth.password.get_secret_value()}@"
        port = f":{self.port}" if self.port else ""
        return f"{self.protocol}://{credentials}{self.host}{port}"


class RunConfig(BaseModel):
    """Configuration of a test run."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    api_key: SecretStr | None = Field(default=None, alias="apiKey")
    app_key: SecretStr | None = Field(default=None, alias="appKey")
    datadog_site: str = Field(default="datadoghq.com", alias="datadogSite")
    subdomain: str = "app"
    api_host_override: str | None = Field(default=None, alias="apiHostOverride")
    files: Sequence[str] = DEFAULT_FILES
    global_config: ConfigOverride = Field(default_factory=ConfigOverride, alias="global")
    polling_timeout: float = Field(default=DEFAULT_POLLING_TIMEOUT, alias="pollingTimeout")
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    tunnel: bool = False

    @property
    def api_base_url(self) -> str:
        """Base URL of the public API."""
        return f"{self.api_host}/api/v1"

    @property
    def intake_base_url(self) -> str:
        """Base URL of the Synthetics intake, used to trigger tests and open tunnels.

        Only the US1 and staging sites have a dedicated intake host; other
        sites and an explicit host override use the API host.
        """
        host = self.api_host
        if not self.api_host_override and self.datadog_site in INTAKE_SITES:
            host = f"https://intake.synthetics.{self.datadog_site}"
        return f"{host}/api/v1"

    @property
    def api_host(self) -> str:
        """API host without path, used for dependency uploads."""
        host = self.api_host_override or f"https://api.{self.datadog_site}"
        return host.rstrip("/")

    @property
    def app_base_url(self) -> str:
        """Base URL of the web application, used to link results."""
        return f"https://{self.subdomain}.{self.datadog_site}/"

    def require_credentials(self) -> tuple[str, str]:
        """Return the API and application keys.

        Raises:
            ConfigurationError: If either key is missing

        """
        missing = [
            name
            for name, value in (
                ("DATADOG_API_KEY", self.api_key),
                ("DATADOG_APP_KEY", self.app_key),
            )
            if value is None or not value.get_secret_value()
        ]
        if missing:
            raise ConfigurationError(f"Missing {', '.join(missing)} in your environment")
        return (
            self.api_key.get_secret_value() if self.api_key else "",
            self.app_key.get_secret_value() if self.app_key else "",
        )


class RunConfigFile(BaseModel):
    """Shape of the JSON config file, all keys optional."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    api_key: str | None = Field(default=None, alias="apiKey")
    app_key: str | None = Field(default=None, alias="appKey")
    datadog_site: str | None = Field(default=None, alias="datadogSite")
    subdomain: str | None = None
    files: list[str] | None = None
    global_config: dict[str, Any] | None = Field(default=None, alias="global")
    polling_timeout: float | None = Field(default=None, alias="pollingTimeout")
    proxy: dict[str, Any] | None = None
    tunnel: bool | None = None


def load_config(
    config_path: Path | None = None,
    *,
    environ: Mapping[str, str],
    **cli_values: Any,
) -> RunConfig:
    """Build the run configuration.

    Sources are applied in order of increasing precedence: defaults,
    environment, JSON config file, explicit command-line values. Command-line
    values that are None are ignored.

    Raises:
        ConfigurationError: If the config file cannot be parsed

    """
    values: dict[str, Any] = {
        field_name: environ[env_key]
        for env_key, field_name in ENVIRONMENT_KEYS.items()
        if environ.get(env_key)
    }

    if config_path is not None:
        values.update(_read_config_file(config_path))

    values.update({key: value for key, value in cli_values.items() if value is not None})

    try:
        return RunConfig.model_validate(values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def _read_config_file(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        log.debug("Config file %s not found, using defaults", config_path)
        return {}

    try:
        raw = RunConfigFile.model_validate_json(config_path.read_text())
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid config file {config_path}: {exc}") from exc

    return raw.model_dump(exclude_unset=True)

