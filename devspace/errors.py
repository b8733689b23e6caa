"""
Exception hierarchy for the devspace workflow.

Fatal errors abort the `up` workflow before any later stage runs; the CLI
catches DevSpaceError, logs its message and exits non-zero.
"""

from typing import Optional


class DevSpaceError(Exception):
    """Base class for all errors raised by devspace."""


class ConfigError(DevSpaceError):
    """Missing or invalid configuration (config.yaml, flags, selectors)."""


class BootstrapError(DevSpaceError):
    """A chart backend bootstrap stage failed."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class BootstrapTimeoutError(BootstrapError):
    """Readiness, tunnel or API verification did not succeed within its budget."""


class ChartBackendError(DevSpaceError):
    """A call to the chart backend failed."""


class ReleaseNotFoundError(ChartBackendError):
    """The requested release does not exist in the chart backend."""

    def __init__(self, release_name: str):
        super().__init__(f"release: \"{release_name}\" not found")
        self.release_name = release_name


class DeploymentError(DevSpaceError):
    """Installing or upgrading the release failed."""


class ReleasePodTimeoutError(DeploymentError):
    """No pod of the deployed release became ready in time."""


class SessionStartError(DevSpaceError):
    """A sync session could not be started."""
