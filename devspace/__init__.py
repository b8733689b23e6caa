"""
devspace: bring up a synchronized development environment in Kubernetes.
"""

__version__ = "0.1.0"
