"""
`devspace up`

Sequence:
    release namespace -> role binding check -> chart backend bootstrap
    -> (registries) -> deployment -> port forwarding -> sync
    -> interactive attach -> session teardown

A fatal bootstrap or deployment error propagates before any session is
started. Sessions are always stopped and the backend tunnel closed once the
attach returns, including when it fails.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..chart.bootstrap import BootstrapManager, ClusterConnection
from ..config import Settings, get_settings
from ..errors import DeploymentError
from ..kubernetes import helpers
from ..kubernetes.attach import enter_terminal
from ..kubernetes.client import KubernetesClient
from ..schemas import Config
from .deployment import DeploymentPipeline, DeploymentResult, resolve_chart_path
from .registry import init_registries
from .release_cache import ReleaseCache
from .session_manager import ForwardSessionHandle, SessionManager, SyncSessionHandle
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)

RBAC_DOCS_URL = "https://devspace.covexo.com/docs/advanced/rbac.html"

AttachFn = Callable[..., Awaitable[int]]


@dataclass
class UpOptions:
    force_backend_upgrade: bool = False  # --tiller
    init_registries: bool = False
    force_deploy: bool = False
    sync: bool = True
    verbose_sync: bool = False
    portforwarding: bool = True
    no_sleep: bool = False
    container: Optional[str] = None
    attach_args: List[str] = field(default_factory=list)


class UpWorkflow:
    """Brings the development environment up and hands over to a terminal."""

    def __init__(
        self,
        config: Config,
        workdir: str = ".",
        settings: Optional[Settings] = None,
        kube: Optional[KubernetesClient] = None,
        connection: Optional[ClusterConnection] = None,
        bootstrap: Optional[BootstrapManager] = None,
        pipeline: Optional[DeploymentPipeline] = None,
        sessions: Optional[SessionManager] = None,
        attach: AttachFn = enter_terminal,
    ):
        self.config = config
        self.workdir = workdir
        self.settings = settings or get_settings()
        self.kube = kube or KubernetesClient(context=config.cluster.kube_context)
        self.connection = connection or ClusterConnection(self.kube, config.backend_namespace)
        self.bootstrap = bootstrap or BootstrapManager(
            self.connection,
            app_namespaces=[self.release_namespace],
            settings=self.settings
        )
        self._pipeline = pipeline
        self._sessions = sessions
        self.attach = attach

    @property
    def release_namespace(self) -> str:
        return self.config.dev_space.release.namespace

    def build_pipeline(self, options: UpOptions) -> DeploymentPipeline:
        if self._pipeline is not None:
            return self._pipeline

        chart_path = resolve_chart_path(self.config, None, self.settings.chart_path)
        cache = ReleaseCache(os.path.join(self.workdir, self.settings.config_dir, self.settings.generated_file))
        return DeploymentPipeline(
            self.config,
            cache,
            chart_path=os.path.join(self.workdir, chart_path),
            no_sleep=options.no_sleep,
            pod_timeout=self.settings.release_pod_timeout_seconds,
            poll_interval=self.settings.poll_interval_seconds
        )

    def build_sessions(self, options: UpOptions) -> SessionManager:
        if self._sessions is not None:
            return self._sessions

        return SessionManager(
            self.kube,
            self.release_namespace,
            sync_engine=SyncEngine(self.kube, poll_interval=self.settings.sync_poll_interval_seconds),
            failure_policy=self.settings.session_failure_policy,
            ready_timeout=self.settings.port_forward_ready_seconds,
            verbose_sync=options.verbose_sync
        )

    # =========================================================================
    # PRE-DEPLOY CHECKS
    # =========================================================================

    async def ensure_release_namespace(self) -> None:
        try:
            if await self.kube.namespace_exists(self.release_namespace):
                return
            logger.info(f"[K8S] Create namespace {self.release_namespace}")
            await self.kube.create_namespace(helpers.create_namespace_manifest(self.release_namespace))
        except ApiException as e:
            raise DeploymentError(
                f"Unable to create release namespace {self.release_namespace}: {e.reason}"
            ) from e

    async def check_cluster_role_binding(self) -> None:
        """Warn when the users' cluster role binding is missing on a remote cluster."""
        if self.kube.is_minikube():
            return

        name = self.settings.cluster_role_binding_name
        try:
            exists = await self.kube.cluster_role_binding_exists(name)
        except Exception as e:
            logger.debug(f"[K8S] Unable to read ClusterRoleBinding {name}: {e}")
            exists = False

        if not exists and not self.config.cluster.cloud_provider:
            logger.warning(
                f"Unable to check permissions: If you run into errors, please create the "
                f"ClusterRoleBinding '{name}' as described here: {RBAC_DOCS_URL}"
            )

    # =========================================================================
    # WORKFLOW
    # =========================================================================

    async def deploy(self, options: UpOptions) -> DeploymentResult:
        """Everything up to a ready release pod; no session is started here."""
        await self.ensure_release_namespace()
        await self.check_cluster_role_binding()

        connection = await self.bootstrap.ensure_ready(force_upgrade=options.force_backend_upgrade)

        if options.init_registries:
            await init_registries(self.kube, self.config)

        pipeline = self.build_pipeline(options)
        return await pipeline.ensure_deployed(connection, force_deploy=options.force_deploy)

    async def run(self, options: UpOptions) -> int:
        """
        Run the whole `up` workflow.

        Returns:
            Exit code of the interactive terminal
        """
        forwards: List[ForwardSessionHandle] = []
        syncs: List[SyncSessionHandle] = []
        sessions: Optional[SessionManager] = None

        try:
            result = await self.deploy(options)
            pod: client.V1Pod = result.pod
            sessions = self.build_sessions(options)

            if options.portforwarding:
                forwards = await sessions.start_forwards(self.config.dev_space.ports)
            if options.sync:
                syncs = await sessions.start_syncs(self.config.dev_space.sync, workdir=self.workdir)

            terminal = self.config.dev_space.terminal
            return await self.attach(
                self.kube,
                pod,
                options.container or terminal.container_name,
                options.attach_args or terminal.command or None
            )
        finally:
            if sessions is not None:
                await sessions.stop_all(syncs, forwards)
            await self.connection.close()
