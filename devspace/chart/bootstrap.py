"""
Chart backend bootstrap

Brings the in-cluster chart backend to a usable state and hands out a ready
ClusterConnection. The bootstrap runs as a state machine:

    NamespaceChecked -> WorkloadChecked -> Installing | Upgrading | ReplicasPending
        -> ReplicasPending -> TunnelEstablished -> APIVerified -> Ready

Each waiting stage (replicas, tunnel, API) has its own polling budget, so a
slow stage cannot eat into the budget of the next one. Any stage failure is
fatal; partially created cluster resources are left in place.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from kubernetes.client.rest import ApiException

from ..config import Settings, get_settings
from ..errors import BootstrapError, BootstrapTimeoutError, ConfigError
from ..kubernetes import helpers
from ..kubernetes.client import KubernetesClient
from ..kubernetes.portforward import PortForwarder, open_tunnel
from ..utils.polling import PollingTimeout, poll_until
from ..utils.resource_naming import build_label_selector
from .backend import ChartBackendClient
from .repositories import RepositoryManager

logger = logging.getLogger(__name__)


class BootstrapStage(str, Enum):
    PENDING = "Pending"
    NAMESPACE_CHECKED = "NamespaceChecked"
    WORKLOAD_CHECKED = "WorkloadChecked"
    INSTALLING = "Installing"
    UPGRADING = "Upgrading"
    REPLICAS_PENDING = "ReplicasPending"
    TUNNEL_ESTABLISHED = "TunnelEstablished"
    API_VERIFIED = "APIVerified"
    READY = "Ready"


@dataclass
class BootstrapState:
    """Progress of one bootstrap attempt; discarded once it succeeds."""
    stage: BootstrapStage = BootstrapStage.PENDING
    history: List[BootstrapStage] = field(default_factory=list)
    errors: Dict[BootstrapStage, BaseException] = field(default_factory=dict)

    def advance(self, stage: BootstrapStage) -> None:
        logger.debug(f"[BOOTSTRAP] {self.stage.value} -> {stage.value}")
        self.stage = stage
        self.history.append(stage)

    def fail(self, stage: BootstrapStage, error: BaseException) -> BootstrapError:
        """Record the error for `stage` and build the fatal error to raise."""
        self.errors[stage] = error
        error_cls = BootstrapTimeoutError if isinstance(error, PollingTimeout) else BootstrapError
        return error_cls(f"Chart backend bootstrap failed at {stage.value}: {error}", stage=stage.value)


class ClusterConnection:
    """
    Cluster API handle plus the tunnel to the chart backend.

    Constructed once per process and passed to every component. It is
    mutated exactly once, by BootstrapManager, when the backend answers
    through the tunnel; after that it is read-only.
    """

    def __init__(self, kube: KubernetesClient, namespace: str):
        self.kube = kube
        self.namespace = namespace
        self._tunnel: Optional[PortForwarder] = None
        self._backend: Optional[ChartBackendClient] = None

    @property
    def ready(self) -> bool:
        return self._backend is not None

    @property
    def backend(self) -> ChartBackendClient:
        if self._backend is None:
            raise BootstrapError("Chart backend connection is not ready")
        return self._backend

    @property
    def endpoint(self) -> Optional[str]:
        if self._tunnel is None or not self._tunnel.local_ports:
            return None
        return f"127.0.0.1:{self._tunnel.local_ports[0]}"

    def mark_ready(self, tunnel: PortForwarder, backend: ChartBackendClient) -> None:
        self._tunnel = tunnel
        self._backend = backend

    async def close(self) -> None:
        if self._backend is not None:
            await self._backend.close()
        if self._tunnel is not None:
            await self._tunnel.close()


class BootstrapManager:
    """
    Ensures the chart backend is installed, healthy and reachable.

    ensure_ready() may be awaited concurrently from several callers: the
    first call starts the single bootstrap attempt and every caller gets its
    outcome, including the same exception if it failed.
    """

    def __init__(
        self,
        connection: ClusterConnection,
        app_namespaces: Iterable[str] = (),
        settings: Optional[Settings] = None,
        repositories: Optional[RepositoryManager] = None,
        backend_factory: Optional[Callable[[str], ChartBackendClient]] = None,
        tunnel_opener=open_tunnel,
        poll_interval: Optional[float] = None,
        wait_timeout: Optional[float] = None,
    ):
        self.settings = settings or get_settings()
        self.connection = connection
        self.kube = connection.kube
        self.namespace = connection.namespace
        self.app_namespaces = [ns for ns in dict.fromkeys(app_namespaces) if ns]
        self.repositories = repositories or RepositoryManager(
            self.settings.helm_home,
            default_name=self.settings.default_repository_name,
            default_url=self.settings.default_repository_url,
            timeout=self.settings.repository_timeout_seconds,
        )
        self.backend_factory = backend_factory or (
            lambda endpoint: ChartBackendClient(endpoint, timeout=self.settings.backend_request_timeout_seconds)
        )
        self.tunnel_opener = tunnel_opener
        self.poll_interval = self.settings.poll_interval_seconds if poll_interval is None else poll_interval
        self.wait_timeout = self.settings.wait_timeout_seconds if wait_timeout is None else wait_timeout

        self._lock = asyncio.Lock()
        self._attempt: Optional[asyncio.Future] = None

    @property
    def deployment_name(self) -> str:
        return self.settings.backend_deployment_name

    async def ensure_ready(self, force_upgrade: bool = False) -> ClusterConnection:
        """
        Bootstrap the chart backend once and return the ready connection.

        Args:
            force_upgrade: Upgrade an already deployed backend (only honoured
                by the first call, which performs the single attempt)

        Raises:
            BootstrapError: If any stage failed
            BootstrapTimeoutError: If readiness, tunnel or API verification timed out
        """
        async with self._lock:
            if self._attempt is None:
                self._attempt = asyncio.ensure_future(self._bootstrap(force_upgrade))
        return await asyncio.shield(self._attempt)

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    async def _bootstrap(self, force_upgrade: bool) -> ClusterConnection:
        state = BootstrapState()
        logger.info(f"[BOOTSTRAP] Connecting to chart backend in namespace {self.namespace}")

        await self._ensure_namespace(state)
        next_stage = await self._check_workload(state, force_upgrade)

        if next_stage == BootstrapStage.INSTALLING:
            await self._install(state)
        elif next_stage == BootstrapStage.UPGRADING:
            await self._upgrade(state)

        await self._wait_for_replicas(state)
        tunnel = await self._establish_tunnel(state)

        try:
            backend = await self._verify_api(state, tunnel)
        except BootstrapError:
            await tunnel.close()
            raise

        try:
            await self._prepare_repositories()
        except (OSError, ConfigError) as e:
            await backend.close()
            await tunnel.close()
            raise state.fail(BootstrapStage.API_VERIFIED, e) from e

        state.advance(BootstrapStage.READY)
        self.connection.mark_ready(tunnel, backend)
        logger.info(f"[BOOTSTRAP] ✅ Chart backend ready at {self.connection.endpoint}")
        return self.connection

    async def _ensure_namespace(self, state: BootstrapState) -> None:
        stage = BootstrapStage.NAMESPACE_CHECKED
        try:
            if not await self.kube.namespace_exists(self.namespace):
                logger.info(f"[BOOTSTRAP] Create namespace {self.namespace}")
                await self.kube.create_namespace(helpers.create_namespace_manifest(self.namespace))
        except Exception as e:
            raise state.fail(stage, e) from e
        state.advance(stage)

    async def _check_workload(self, state: BootstrapState, force_upgrade: bool) -> BootstrapStage:
        stage = BootstrapStage.WORKLOAD_CHECKED
        try:
            deployment = await self.kube.get_deployment(self.deployment_name, self.namespace)
        except Exception as e:
            raise state.fail(stage, e) from e
        state.advance(stage)

        if deployment is None:
            return BootstrapStage.INSTALLING
        if force_upgrade:
            return BootstrapStage.UPGRADING
        return BootstrapStage.REPLICAS_PENDING

    def _backend_deployment(self):
        return helpers.create_backend_deployment_manifest(
            name=self.deployment_name,
            namespace=self.namespace,
            image=self.settings.backend_image,
            service_account=self.settings.backend_service_account,
            port=self.settings.backend_port,
            max_history=self.settings.backend_max_history,
        )

    async def _install(self, state: BootstrapState) -> None:
        stage = BootstrapStage.INSTALLING
        state.advance(stage)
        logger.info("[BOOTSTRAP] Installing chart backend")

        try:
            # An existing service account means RBAC was set up by an earlier install
            if not await self.kube.service_account_exists(self.settings.backend_service_account, self.namespace):
                await self._create_rbac()

            await self.kube.create_deployment(self._backend_deployment(), self.namespace)
            await self.kube.create_service(
                helpers.create_backend_service_manifest(
                    self.deployment_name, self.namespace, self.settings.backend_port
                ),
                self.namespace
            )
        except Exception as e:
            raise state.fail(stage, e) from e

        logger.info("[BOOTSTRAP] ✅ Chart backend started")

    async def _create_rbac(self) -> None:
        service_account = self.settings.backend_service_account
        role = self.settings.backend_role

        await self.kube.create_service_account(
            helpers.create_service_account_manifest(service_account, self.namespace),
            self.namespace
        )

        for namespace in dict.fromkeys([self.namespace, *self.app_namespaces]):
            await self.kube.create_role(
                helpers.create_backend_role_manifest(role, namespace),
                namespace
            )
            await self.kube.create_role_binding(
                helpers.create_backend_role_binding_manifest(
                    role, namespace, service_account, self.namespace
                ),
                namespace
            )

    async def _upgrade(self, state: BootstrapState) -> None:
        stage = BootstrapStage.UPGRADING
        state.advance(stage)
        logger.info("[BOOTSTRAP] Upgrading chart backend")

        try:
            await self.kube.patch_deployment(self._backend_deployment(), self.namespace)
        except Exception as e:
            raise state.fail(stage, e) from e

    async def _wait_for_replicas(self, state: BootstrapState) -> None:
        stage = BootstrapStage.REPLICAS_PENDING
        state.advance(stage)
        logger.info(f"[BOOTSTRAP] Waiting for {self.namespace}/{self.deployment_name} to become ready")

        async def _replicas_ready() -> bool:
            deployment = await self.kube.get_deployment(self.deployment_name, self.namespace)
            if deployment is None:
                return False
            desired = deployment.spec.replicas if deployment.spec and deployment.spec.replicas is not None else 1
            ready = (deployment.status.ready_replicas or 0) if deployment.status else 0
            return desired > 0 and ready == desired

        try:
            await poll_until(
                _replicas_ready,
                interval=self.poll_interval,
                timeout=self.wait_timeout,
                description="chart backend replicas"
            )
        except PollingTimeout as e:
            state.errors[stage] = e
            raise BootstrapTimeoutError(
                f"Chart backend did not become ready within {self.wait_timeout:g} seconds",
                stage=stage.value
            ) from e

    async def _establish_tunnel(self, state: BootstrapState) -> PortForwarder:
        stage = BootstrapStage.TUNNEL_ESTABLISHED
        selector = build_label_selector(helpers.BACKEND_LABELS)

        try:
            tunnel = await poll_until(
                lambda: self.tunnel_opener(self.kube, self.namespace, selector, self.settings.backend_port),
                interval=self.poll_interval,
                timeout=self.wait_timeout,
                description="tunnel to chart backend"
            )
        except PollingTimeout as e:
            raise state.fail(stage, e) from e

        state.advance(stage)
        return tunnel

    async def _verify_api(self, state: BootstrapState, tunnel: PortForwarder) -> ChartBackendClient:
        stage = BootstrapStage.API_VERIFIED
        backend = self.backend_factory(f"http://127.0.0.1:{tunnel.local_ports[0]}")

        async def _list_one() -> bool:
            await backend.list_releases(limit=1)
            return True

        try:
            await poll_until(
                _list_one,
                interval=self.poll_interval,
                timeout=self.wait_timeout,
                description="chart backend API"
            )
        except PollingTimeout as e:
            await backend.close()
            raise state.fail(stage, e) from e

        state.advance(stage)
        return backend

    async def _prepare_repositories(self) -> None:
        failed = await self.repositories.prepare()
        if failed:
            logger.warning(f"[BOOTSTRAP] Could not refresh repositories: {', '.join(failed)}")

    # =========================================================================
    # INSPECTION / REMOVAL
    # =========================================================================

    async def is_backend_deployed(self) -> bool:
        try:
            return await self.kube.get_deployment(self.deployment_name, self.namespace) is not None
        except ApiException:
            return False

    async def delete_backend(self, remove_rbac: bool = True) -> None:
        """
        Remove the backend deployment, service and (optionally) its RBAC.

        Not-found errors are ignored; all other errors are collected and
        raised together after every deletion was attempted.
        """
        kube = self.kube
        deletions = [
            (kube.apps_v1.delete_namespaced_deployment, self.deployment_name, self.namespace),
            (kube.core_v1.delete_namespaced_service, self.deployment_name, self.namespace),
        ]

        if remove_rbac:
            role = self.settings.backend_role
            deletions.append(
                (kube.core_v1.delete_namespaced_service_account, self.settings.backend_service_account, self.namespace)
            )
            for namespace in dict.fromkeys([self.namespace, *self.app_namespaces]):
                deletions.append((kube.rbac_v1.delete_namespaced_role, role, namespace))
                deletions.append((kube.rbac_v1.delete_namespaced_role_binding, f"{role}-binding", namespace))

        errors = []
        for delete_fn, name, namespace in deletions:
            try:
                await kube.delete_resource(delete_fn, name, namespace)
            except ApiException as e:
                errors.append(f"{namespace}/{name}: {e.reason}")

        if errors:
            raise BootstrapError("Failed to delete chart backend:\n" + "\n".join(errors))
