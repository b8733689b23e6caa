"""
Session Manager

Resolves sync and port-forward declarations to concrete pods and owns the
resulting sessions until StopAll. Pods are resolved fresh on every start;
nothing about a resolved pod is cached between runs.

Failure policy:
- A declaration whose selector matches no running pod, or whose container
  is missing from the resolved pod, is skipped with a warning.
- A sync session that fails to start aborts the whole batch under the
  `abort` policy, or is logged and summarized under `isolate`.
- A port forward that is not ready within the readiness bound only warns.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from kubernetes import client

from ..errors import SessionStartError
from ..kubernetes.helpers import get_container_names
from ..kubernetes.portforward import PortForwarder
from ..schemas import PortForwardingConfig, SyncConfig
from ..utils.resource_naming import build_label_selector
from .sync_engine import SyncEngine, SyncSession

logger = logging.getLogger(__name__)


class SessionFailurePolicy(str, Enum):
    ABORT = "abort"
    ISOLATE = "isolate"


@dataclass
class SelectorQuery:
    labels: Dict[str, str]
    namespace: str
    resource_type: Optional[str] = None
    container_name: Optional[str] = None

    @property
    def label_selector(self) -> str:
        return build_label_selector(self.labels)


@dataclass
class SyncSessionHandle:
    pod: client.V1Pod
    container: str
    session: SyncSession
    stopped: bool = False

    async def stop(self) -> None:
        if self.stopped:
            return
        # Marked first so a failing stop is never retried
        self.stopped = True
        await self.session.stop()


@dataclass
class ForwardSessionHandle:
    pod: client.V1Pod
    forwarder: PortForwarder
    task: asyncio.Task
    port_pairs: List[str] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.forwarder.ready.is_set()

    def stop(self) -> None:
        self.forwarder.stop()


ForwarderFactory = Callable[..., PortForwarder]


def _log_forward_exit(task: asyncio.Task, port_pairs: List[str]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"[PORTFORWARD] Port forwarding {', '.join(port_pairs)} failed: {error}")


class SessionManager:
    """Starts, tracks and stops sync and port-forward sessions."""

    def __init__(
        self,
        kube,
        release_namespace: str,
        sync_engine: Optional[SyncEngine] = None,
        forwarder_factory: ForwarderFactory = PortForwarder,
        failure_policy: SessionFailurePolicy = SessionFailurePolicy.ABORT,
        ready_timeout: float = 5.0,
        verbose_sync: bool = False,
    ):
        self.kube = kube
        self.release_namespace = release_namespace
        self.sync_engine = sync_engine or SyncEngine(kube)
        self.forwarder_factory = forwarder_factory
        self.failure_policy = SessionFailurePolicy(failure_policy)
        self.ready_timeout = ready_timeout
        self.verbose_sync = verbose_sync

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def query_for_sync(self, declaration: SyncConfig) -> SelectorQuery:
        return SelectorQuery(
            labels=declaration.label_selector,
            namespace=declaration.namespace or self.release_namespace,
            container_name=declaration.container_name
        )

    def query_for_forward(self, declaration: PortForwardingConfig) -> SelectorQuery:
        return SelectorQuery(
            labels=declaration.label_selector,
            namespace=declaration.namespace or self.release_namespace,
            resource_type=declaration.resource_type
        )

    async def resolve_pod(self, query: SelectorQuery) -> Optional[client.V1Pod]:
        """First running pod matching the query, or None (logged)."""
        try:
            pod = await self.kube.get_first_running_pod(query.label_selector, query.namespace)
        except Exception as e:
            logger.warning(f"[SESSION] Unable to list pods for {query.label_selector}: {e}")
            return None
        if pod is None:
            logger.warning(
                f"[SESSION] No running pod matches {query.label_selector} "
                f"in namespace {query.namespace}, skipping"
            )
        return pod

    @staticmethod
    def resolve_container(pod: client.V1Pod, container_name: Optional[str]) -> Optional[str]:
        names = get_container_names(pod)
        if not names:
            logger.warning(f"[SESSION] Pod {pod.metadata.name} has no containers, skipping")
            return None
        if container_name is None:
            return names[0]
        if container_name not in names:
            logger.warning(
                f"[SESSION] Container {container_name} not found in pod {pod.metadata.name}, skipping"
            )
            return None
        return container_name

    # =========================================================================
    # SYNC
    # =========================================================================

    async def start_sync(self, declaration: SyncConfig, workdir: str = ".") -> Optional[SyncSessionHandle]:
        """
        Start one sync declaration.

        Returns:
            The handle, or None if the declaration was skipped

        Raises:
            SessionStartError: If the sync engine failed to start the session
        """
        query = self.query_for_sync(declaration)
        if not query.labels:
            logger.warning("[SYNC] Sync declaration has no label selector, skipping")
            return None

        pod = await self.resolve_pod(query)
        if pod is None:
            return None
        container = self.resolve_container(pod, query.container_name)
        if container is None:
            return None

        try:
            session = await self.sync_engine.start(
                pod,
                container,
                declaration,
                verbose=self.verbose_sync,
                workdir=workdir
            )
        except Exception as e:
            raise SessionStartError(
                f"Unable to start sync {declaration.local_sub_path} -> "
                f"{pod.metadata.name}:{declaration.container_path}: {e}"
            ) from e

        logger.info(
            f"[SYNC] ✅ Sync started on {declaration.local_sub_path} <-> "
            f"{declaration.container_path} (Pod: {pod.metadata.namespace}/{pod.metadata.name})"
        )
        return SyncSessionHandle(pod=pod, container=container, session=session)

    async def start_syncs(self, declarations: List[SyncConfig], workdir: str = ".") -> List[SyncSessionHandle]:
        """
        Start every sync declaration concurrently.

        Under the abort policy the first failure stops the sessions that did
        start and is raised; under isolate the failures are summarized.
        """
        results = await asyncio.gather(
            *(self.start_sync(d, workdir) for d in declarations),
            return_exceptions=True
        )

        handles = [r for r in results if isinstance(r, SyncSessionHandle)]
        failures = [r for r in results if isinstance(r, BaseException)]

        if failures:
            if self.failure_policy == SessionFailurePolicy.ABORT:
                await self.stop_all(handles, [])
                raise failures[0]
            for failure in failures:
                logger.error(f"[SYNC] {failure}")
            logger.warning(
                f"[SYNC] {len(failures)} of {len(declarations)} sync session(s) failed to start, "
                f"{len(handles)} running"
            )
        return handles

    # =========================================================================
    # PORT FORWARDING
    # =========================================================================

    async def start_forward(self, declaration: PortForwardingConfig) -> Optional[ForwardSessionHandle]:
        """
        Start one port-forward declaration in the background.

        Waits up to `ready_timeout` for the forwarder to bind; a forwarder
        that is not ready by then keeps running and only a warning is logged.

        Returns:
            The handle, or None if the declaration was skipped
        """
        query = self.query_for_forward(declaration)
        if query.resource_type and query.resource_type != "pod":
            logger.warning(f"[PORTFORWARD] Resource type {query.resource_type} is not supported, skipping")
            return None
        if not query.labels:
            logger.warning("[PORTFORWARD] Port forwarding declaration has no label selector, skipping")
            return None

        pod = await self.resolve_pod(query)
        if pod is None:
            return None

        port_pairs = [mapping.as_pair() for mapping in declaration.port_mappings]
        forwarder = self.forwarder_factory(
            self.kube,
            pod.metadata.name,
            pod.metadata.namespace,
            port_pairs
        )
        task = asyncio.create_task(forwarder.run())
        task.add_done_callback(lambda t: _log_forward_exit(t, port_pairs))
        handle = ForwardSessionHandle(pod=pod, forwarder=forwarder, task=task, port_pairs=port_pairs)

        ready_wait = asyncio.create_task(forwarder.ready.wait())
        try:
            await asyncio.wait({ready_wait, task}, timeout=self.ready_timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready_wait.cancel()

        if task.done() and (task.cancelled() or task.exception() is not None):
            return None

        if forwarder.ready.is_set():
            logger.info(
                f"[PORTFORWARD] ✅ Port forwarding started on {', '.join(port_pairs)} "
                f"(Pod: {pod.metadata.namespace}/{pod.metadata.name})"
            )
        else:
            logger.warning(
                f"[PORTFORWARD] Port forwarding {', '.join(port_pairs)} not ready "
                f"after {self.ready_timeout}s, continuing"
            )
        return handle

    async def start_forwards(self, declarations: List[PortForwardingConfig]) -> List[ForwardSessionHandle]:
        results = await asyncio.gather(*(self.start_forward(d) for d in declarations))
        return [r for r in results if r is not None]

    # =========================================================================
    # TEARDOWN
    # =========================================================================

    async def stop_all(
        self,
        sync_handles: List[SyncSessionHandle],
        forward_handles: List[ForwardSessionHandle]
    ) -> None:
        """Stop every session; individual stop errors are logged, not raised."""
        results = await asyncio.gather(
            *(handle.stop() for handle in sync_handles),
            return_exceptions=True
        )
        for handle, result in zip(sync_handles, results):
            if isinstance(result, BaseException):
                logger.error(f"[SYNC] Error stopping sync on pod {handle.pod.metadata.name}: {result}")

        for handle in forward_handles:
            handle.stop()
