"""Shared utilities."""
from .async_subprocess import run_async, SubprocessResult, check_command_exists
from .polling import poll_until, PollingTimeout, PollingCancelled
from .values import merge_values

__all__ = [
    "run_async",
    "SubprocessResult",
    "check_command_exists",
    "poll_until",
    "PollingTimeout",
    "PollingCancelled",
    "merge_values",
]
