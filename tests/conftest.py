"""
Test configuration and fixtures for pytest.

Fixtures build Kubernetes objects (pods, deployments) and devspace config
models so that tests can drive the workflow against mocked cluster APIs.
"""

import os
import sys
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import Mock

import pytest
from kubernetes import client

# Add the repository root to sys.path
repo_dir = Path(__file__).parent.parent
sys.path.insert(0, str(repo_dir))


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    # Keep a developer's environment from leaking into the tests
    os.environ["DEVSPACE_LOG_LEVEL"] = "DEBUG"
    os.environ["DEVSPACE_HELM_HOME"] = str(repo_dir / ".pytest-helm-home")

    from devspace.config import get_settings
    get_settings.cache_clear()

    # Register custom markers
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "kubernetes: mark test as exercising Kubernetes client code")


def make_pod(
    name: str = "web-0",
    namespace: str = "default",
    labels: Optional[Dict[str, str]] = None,
    containers: Optional[List[str]] = None,
    phase: str = "Running",
    ready: bool = True,
    annotations: Optional[Dict[str, str]] = None,
) -> client.V1Pod:
    """Build a real V1Pod; status and containers are filled in like a live pod."""
    container_names = ["default"] if containers is None else containers
    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels or {},
            annotations=annotations or {},
        ),
        spec=client.V1PodSpec(
            containers=[client.V1Container(name=c, image="busybox") for c in container_names]
        ),
        status=client.V1PodStatus(
            phase=phase,
            conditions=[client.V1PodCondition(type="Ready", status="True" if ready else "False")],
        ),
    )


def make_deployment(name: str = "tiller-deploy", replicas: int = 1, ready_replicas: Optional[int] = 1):
    deployment = Mock()
    deployment.metadata.name = name
    deployment.spec.replicas = replicas
    deployment.status.replicas = replicas
    deployment.status.ready_replicas = ready_replicas
    return deployment


@pytest.fixture
def pod_factory():
    return make_pod


@pytest.fixture
def deployment_factory():
    return make_deployment


@pytest.fixture
def project_dir(tmp_path):
    """A project directory with a minimal chart."""
    chart_dir = tmp_path / "chart"
    (chart_dir / "templates").mkdir(parents=True)
    (chart_dir / "Chart.yaml").write_text("name: devspace-app\nversion: 0.1.0\n")
    (chart_dir / "values.yaml").write_text("containers: {}\npullSecrets:\n  - existing-secret\n")
    (chart_dir / "templates" / "deployment.yaml").write_text("kind: Deployment\n")
    return tmp_path
