"""Exception hierarchy shared by every stage of a run."""

from pathlib import Path


class SyntheticsError(Exception):
    """Base class for errors raised by synthetics_ci."""


class ConfigurationError(SyntheticsError):
    """Raised when the run cannot start because of missing or invalid settings."""


class DiscoveryError(SyntheticsError):
    """Raised when a single suite file cannot be read or parsed."""

    def __init__(self, path: Path | str, reason: str) -> None:
        super().__init__(f"Invalid suite file {path}: {reason}")
        self.path = Path(path)
        self.reason = reason


class TransportError(SyntheticsError, ConnectionError):
    """Raised when a remote call fails at the network or HTTP level."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TunnelError(TransportError):
    """Raised when the tunnel handshake cannot be completed."""


class UploadError(TransportError):
    """Raised when a dependency upload request fails."""
