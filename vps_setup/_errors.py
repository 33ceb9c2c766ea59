"""Exception hierarchy for the VPS provisioning stages.

Every failure raised by a stage carries an :class:`ErrorKind` so the
pipeline driver can report what went wrong without inspecting messages.

Examples
--------
>>> CommandError("apt-get install -y ufw failed").kind is ErrorKind.COMMAND
True
"""

from __future__ import annotations

import enum


class ErrorKind(enum.StrEnum):
    """Failure categories surfaced by a stage result."""

    PRECONDITION = "precondition"
    DEPENDENCY = "dependency"
    COMMAND = "command"
    DOWNLOAD = "download"
    UNSUPPORTED_ARCHITECTURE = "unsupported-architecture"


class ProvisionError(Exception):
    """Base error for provisioning failures.

    Parameters
    ----------
    message
        Human-readable error message describing the failure.
    """

    kind: ErrorKind = ErrorKind.COMMAND


class PreconditionError(ProvisionError):
    """Raised when the host or the configuration cannot be provisioned."""

    kind = ErrorKind.PRECONDITION


class ConfigError(PreconditionError):
    """Raised when a configuration value is missing or invalid."""


class StageDependencyError(ProvisionError):
    """Raised when an upstream stage has not left its artifacts on disk."""

    kind = ErrorKind.DEPENDENCY


class CommandError(ProvisionError):
    """Raised when an external command exits with a non-zero status."""

    kind = ErrorKind.COMMAND


class ServiceError(CommandError):
    """Raised when a systemd unit does not reach the active state."""


class DownloadError(ProvisionError):
    """Raised when release metadata or an archive cannot be fetched."""

    kind = ErrorKind.DOWNLOAD


class UnsupportedArchitectureError(ProvisionError):
    """Raised when no release asset exists for the host architecture."""

    kind = ErrorKind.UNSUPPORTED_ARCHITECTURE


__all__ = [
    "CommandError",
    "ConfigError",
    "DownloadError",
    "ErrorKind",
    "PreconditionError",
    "ProvisionError",
    "ServiceError",
    "StageDependencyError",
    "UnsupportedArchitectureError",
]
