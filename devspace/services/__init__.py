"""
Workflow services:
- ReleaseCache / DeploymentPipeline: fingerprint-driven (re)deployment
- SessionManager / SyncEngine: sync and port-forward sessions
- ConfigStore: config.yaml / overwrite.yaml access
- UpWorkflow: the `up` sequence
"""

from .config_store import ConfigStore
from .deployment import DeploymentPipeline, DeploymentResult, resolve_chart_path
from .orchestrator import UpOptions, UpWorkflow
from .release_cache import ReleaseCache, ReleaseFingerprint, fingerprint_directory
from .session_manager import (
    ForwardSessionHandle,
    SelectorQuery,
    SessionFailurePolicy,
    SessionManager,
    SyncSessionHandle,
)
from .sync_engine import SyncEngine, SyncSession

__all__ = [
    "ConfigStore",
    "DeploymentPipeline",
    "DeploymentResult",
    "resolve_chart_path",
    "UpOptions",
    "UpWorkflow",
    "ReleaseCache",
    "ReleaseFingerprint",
    "fingerprint_directory",
    "ForwardSessionHandle",
    "SelectorQuery",
    "SessionFailurePolicy",
    "SessionManager",
    "SyncSessionHandle",
    "SyncEngine",
    "SyncSession",
]
