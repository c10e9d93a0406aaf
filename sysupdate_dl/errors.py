"""
Exception hierarchy for sysupdate_dl

Every error here is fatal for the current run; nothing is retried.
"""

from typing import Optional


class SysUpdateError(Exception):
    """Base class for all sysupdate_dl errors."""
    pass


class ConfigurationError(SysUpdateError):
    """Raised for bad certificate/keyset paths, malformed PEM and bad options."""
    pass


class SectionHeaderMissing(ConfigurationError):
    """Raised when a PEM section's BEGIN marker is absent."""

    def __init__(self, label: str):
        super().__init__(f"PEM section '{label}' not found (missing BEGIN marker)")
        self.label = label


class SectionFooterMissing(ConfigurationError):
    """Raised when a PEM section has a BEGIN marker but no matching END marker."""

    def __init__(self, label: str):
        super().__init__(f"PEM section '{label}' is not terminated (missing END marker)")
        self.label = label


class IdentityAssemblyFailed(ConfigurationError):
    """Raised when the private key and certificate cannot be combined."""
    pass


class VersionParseError(ConfigurationError, ValueError):
    """Raised when a version code cannot be parsed."""
    pass


class ProtocolError(SysUpdateError):
    """Raised for unexpected HTTP status, missing headers or schema mismatch."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class ContainerDecodeError(SysUpdateError):
    """Raised when a container cannot be decrypted or fails its integrity check."""
    pass


class GraphInvariantViolation(SysUpdateError):
    """Raised when a batch holds entries of the wrong kind."""
    pass


class ReporterMisuse(SysUpdateError):
    """Raised when the progress reporter is used after completion."""
    pass


class DownloadAborted(SysUpdateError):
    """Raised when the user declines to overwrite an existing output directory."""

    def __init__(self, message: str, exit_code: int):
        super().__init__(message)
        self.exit_code = exit_code
