"""
Deployment pipeline

Decides whether the release has to be (re)installed and, if so, installs or
upgrades it through the chart backend and waits for its pod. The decision,
first match wins:

1. no running pod of the release  -> deploy
2. force_deploy                    -> deploy
3. chart fingerprint changed       -> deploy
4. otherwise reuse the running pod

The release cache is written only after the release pod became ready, so a
failed or timed-out deployment is always retried on the next run.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import yaml
from kubernetes import client

from ..chart.bootstrap import ClusterConnection
from ..errors import ChartBackendError, ConfigError, DeploymentError
from ..schemas import Config
from ..utils.values import merge_values
from .registry import get_image_url, get_pull_secret_names
from .release_cache import ReleaseCache

logger = logging.getLogger(__name__)


def resolve_chart_path(config: Config, deployment: Optional[str], default_chart_path: str) -> str:
    """
    Chart directory of the selected deployment.

    With no deployments declared the project chart is used; with several,
    one must be named.

    Raises:
        ConfigError: If the deployment is ambiguous, unknown or not a helm deployment
    """
    deployments = config.dev_space.deployments
    if not deployments:
        if deployment:
            raise ConfigError(f"Deployment {deployment} not found")
        return default_chart_path

    if deployment is None and len(deployments) != 1:
        raise ConfigError("Please specify the deployment via the -d flag")

    for candidate in deployments:
        if deployment is None or candidate.name == deployment:
            if candidate.helm is None or not candidate.helm.chart_path:
                raise ConfigError(f"Selected deployment {candidate.name} is not a valid helm deployment")
            return candidate.helm.chart_path

    raise ConfigError(f"Deployment {deployment} not found")


@dataclass
class DeploymentResult:
    pod: client.V1Pod
    revision: Optional[int]
    deployed: bool
    reason: Optional[str] = None


class DeploymentPipeline:
    """Conditionally deploys the release chart and resolves its pod."""

    def __init__(
        self,
        config: Config,
        cache: ReleaseCache,
        chart_path: str = "chart",
        no_sleep: bool = False,
        pod_timeout: float = 120.0,
        poll_interval: float = 2.0,
    ):
        self.config = config
        self.cache = cache
        self.chart_path = chart_path
        self.no_sleep = no_sleep
        self.pod_timeout = pod_timeout
        self.poll_interval = poll_interval

    @property
    def release_name(self) -> str:
        return self.config.dev_space.release.name

    @property
    def release_namespace(self) -> str:
        return self.config.dev_space.release.namespace

    async def find_release_pod(self, conn: ClusterConnection) -> Optional[client.V1Pod]:
        """Get a running pod belonging to the release, or None."""
        try:
            return await conn.kube.get_first_running_pod(
                f"release={self.release_name}", self.release_namespace
            )
        except Exception as e:
            logger.warning(f"[DEPLOY] Unable to list release pods: {e}")
            return None

    async def ensure_deployed(self, conn: ClusterConnection, force_deploy: bool = False) -> DeploymentResult:
        """
        Make sure a ready pod of the current chart is running.

        Raises:
            DeploymentError: Install/upgrade failed
            ReleasePodTimeoutError: The release pod did not become ready in time
        """
        try:
            chart_hash = await asyncio.to_thread(self.cache.fingerprint, self.chart_path)
        except OSError as e:
            raise DeploymentError(f"Error hashing chart directory {self.chart_path}: {e}") from e

        cached = self.cache.load()
        pod = await self.find_release_pod(conn)

        if pod is None:
            reason = "no running release pod"
        elif force_deploy:
            reason = "deployment forced"
        elif cached.chart_hash != chart_hash:
            reason = "chart changed"
        else:
            logger.info(f"[DEPLOY] Chart unchanged, reusing pod {pod.metadata.namespace}/{pod.metadata.name}")
            return DeploymentResult(pod=pod, revision=cached.revision, deployed=False)

        logger.info(f"[DEPLOY] Deploying release {self.release_namespace}/{self.release_name} ({reason})")
        pod, revision = await self.deploy(conn)

        await asyncio.to_thread(self.cache.save, chart_hash, revision)
        return DeploymentResult(pod=pod, revision=revision, deployed=True, reason=reason)

    # =========================================================================
    # DEPLOY
    # =========================================================================

    def load_chart_values(self) -> Dict[str, Any]:
        values_path = os.path.join(self.chart_path, "values.yaml")
        if not os.path.exists(values_path):
            return {}
        try:
            with open(values_path) as f:
                values = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise DeploymentError(f"Couldn't deploy chart, error reading from chart values {values_path}: {e}") from e
        if not isinstance(values, dict):
            raise DeploymentError(f"Chart values {values_path} must be a mapping")
        return values

    def build_override_values(self, base_values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Build the values devspace controls: container images, the optional
        no-sleep command override and the registry pull secrets.
        """
        image_tags = self.cache.load_generated().image_tags
        containers: Dict[str, Dict[str, Any]] = {}

        for image_name, image in self.config.images.items():
            container: Dict[str, Any] = {"image": get_image_url(self.config, image, image_tags)}
            if self.no_sleep:
                container["command"] = []
                container["args"] = []
            containers[image_name] = container

        pull_secrets: List[Any] = list(base_values.get("pullSecrets") or [])
        for secret_name in get_pull_secret_names(self.config):
            if secret_name not in pull_secrets:
                pull_secrets.append(secret_name)

        return {"containers": containers, "pullSecrets": pull_secrets}

    async def deploy(self, conn: ClusterConnection):
        """
        Install or upgrade the release and wait for its pod.

        Returns:
            (pod, revision)
        """
        base_values = self.load_chart_values()
        values = merge_values(base_values, self.build_override_values(base_values))

        try:
            release = await conn.backend.install_chart_by_path(
                self.release_name,
                self.release_namespace,
                self.chart_path,
                values
            )
        except ChartBackendError as e:
            raise DeploymentError(f"Unable to deploy helm chart: {e}") from e

        logger.info(f"[DEPLOY] ✅ Deployed helm chart (Release revision: {release.revision})")
        logger.info("[DEPLOY] Waiting for release pod to become ready")

        pod = await conn.kube.wait_for_release_pod(
            self.release_name,
            self.release_namespace,
            release.revision,
            timeout=self.pod_timeout,
            interval=self.poll_interval
        )
        return pod, release.revision
