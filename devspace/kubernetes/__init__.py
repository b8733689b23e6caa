"""
Kubernetes access for devspace:
- KubernetesClient: async wrapper over the cluster API
- helpers: manifests for the chart backend, its RBAC and pull secrets
- PortForwarder / open_tunnel: local port forwarding to pods
- enter_terminal: interactive TTY attach
"""

from .client import KubernetesClient, is_pod_ready, is_pod_running
from .portforward import PortForwarder, open_tunnel
from .attach import enter_terminal, select_container

__all__ = [
    "KubernetesClient",
    "is_pod_ready",
    "is_pod_running",
    "PortForwarder",
    "open_tunnel",
    "enter_terminal",
    "select_container",
]
