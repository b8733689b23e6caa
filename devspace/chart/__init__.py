"""
Chart backend access:
- BootstrapManager / ClusterConnection: backend install, readiness and tunnel
- ChartBackendClient: release install/upgrade/list/delete over the tunnel
- RepositoryManager: local chart repository cache
"""

from .backend import ChartBackendClient, Release, package_chart
from .bootstrap import BootstrapManager, BootstrapStage, BootstrapState, ClusterConnection
from .repositories import ChartRepository, RepositoryManager

__all__ = [
    "ChartBackendClient",
    "Release",
    "package_chart",
    "BootstrapManager",
    "BootstrapStage",
    "BootstrapState",
    "ClusterConnection",
    "ChartRepository",
    "RepositoryManager",
]
