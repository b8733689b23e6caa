"""
Kubernetes Client for the devspace workflow

Thin async wrapper over the official kubernetes client: every blocking API
call runs in a worker thread through asyncio.to_thread, 404s are turned
into "absent" results and 409s on create are treated as "already exists".
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
import asyncio
import logging
from typing import Dict, Optional, List

from ..utils.polling import poll_until, PollingTimeout
from ..errors import ConfigError, ReleasePodTimeoutError

logger = logging.getLogger(__name__)

# Pods rendered by release charts carry the backend's revision in this annotation
REVISION_ANNOTATION = "revision"


def is_pod_running(pod: client.V1Pod) -> bool:
    """Check if a pod is running and not being deleted."""
    if pod.metadata and pod.metadata.deletion_timestamp:
        return False
    return bool(pod.status and pod.status.phase == "Running")


def is_pod_ready(pod: client.V1Pod) -> bool:
    """Check if a pod is running and its Ready condition is true."""
    if not is_pod_running(pod) or not pod.status.conditions:
        return False

    for condition in pod.status.conditions:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


class KubernetesClient:
    """
    Cluster API access shared by every devspace component.

    Created once per process; all methods are safe to call concurrently.
    """

    def __init__(self, context: Optional[str] = None):
        """Initialize Kubernetes client from kubeconfig or in-cluster config."""
        self.context = context

        try:
            config.load_kube_config(context=context)
            logger.debug(f"[K8S] Loaded kubeconfig (context: {context or 'current'})")
        except config.ConfigException:
            try:
                config.load_incluster_config()
                logger.debug("[K8S] Loaded in-cluster Kubernetes configuration")
            except config.ConfigException as e:
                logger.error(f"[K8S] Failed to load Kubernetes config: {e}")
                raise ConfigError(f"Cannot load Kubernetes configuration: {e}") from e

        # Initialize API clients
        self.apps_v1 = client.AppsV1Api()
        self.core_v1 = client.CoreV1Api()
        self.rbac_v1 = client.RbacAuthorizationV1Api()

    def get_stream_client(self) -> client.CoreV1Api:
        """
        Create a fresh CoreV1Api client for stream operations.

        The kubernetes `stream()`/`portforward()` helpers patch the api
        client's request method to use WebSocket, so streams get their own
        client and never share self.core_v1 with concurrent regular calls.
        """
        return client.CoreV1Api()

    def is_minikube(self) -> bool:
        """Check whether the active kubeconfig context is minikube."""
        try:
            _, active = config.list_kube_config_contexts()
        except config.ConfigException:
            return False
        if self.context:
            return self.context == "minikube"
        return bool(active) and active.get("name") == "minikube"

    # =========================================================================
    # NAMESPACES
    # =========================================================================

    async def namespace_exists(self, namespace: str) -> bool:
        try:
            await asyncio.to_thread(
                self.core_v1.read_namespace,
                name=namespace
            )
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    async def create_namespace(self, body: client.V1Namespace) -> None:
        try:
            await asyncio.to_thread(
                self.core_v1.create_namespace,
                body=body
            )
            logger.info(f"[K8S] ✅ Created namespace: {body.metadata.name}")
        except ApiException as e:
            if e.status != 409:
                raise
            logger.debug(f"[K8S] Namespace {body.metadata.name} already exists")

    # =========================================================================
    # SERVICE ACCOUNTS / RBAC
    # =========================================================================

    async def service_account_exists(self, name: str, namespace: str) -> bool:
        try:
            await asyncio.to_thread(
                self.core_v1.read_namespaced_service_account,
                name=name,
                namespace=namespace
            )
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    async def create_service_account(self, body: client.V1ServiceAccount, namespace: str) -> None:
        try:
            await asyncio.to_thread(
                self.core_v1.create_namespaced_service_account,
                namespace=namespace,
                body=body
            )
            logger.info(f"[K8S] ✅ Created service account: {namespace}/{body.metadata.name}")
        except ApiException as e:
            if e.status != 409:
                raise

    async def create_role(self, body: client.V1Role, namespace: str) -> None:
        try:
            await asyncio.to_thread(
                self.rbac_v1.create_namespaced_role,
                namespace=namespace,
                body=body
            )
            logger.info(f"[K8S] ✅ Created role: {namespace}/{body.metadata.name}")
        except ApiException as e:
            if e.status != 409:
                raise

    async def create_role_binding(self, body: client.V1RoleBinding, namespace: str) -> None:
        try:
            await asyncio.to_thread(
                self.rbac_v1.create_namespaced_role_binding,
                namespace=namespace,
                body=body
            )
            logger.info(f"[K8S] ✅ Created role binding: {namespace}/{body.metadata.name}")
        except ApiException as e:
            if e.status != 409:
                raise

    async def cluster_role_binding_exists(self, name: str) -> bool:
        try:
            await asyncio.to_thread(
                self.rbac_v1.read_cluster_role_binding,
                name=name
            )
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    # =========================================================================
    # DEPLOYMENTS / SERVICES / SECRETS
    # =========================================================================

    async def get_deployment(self, name: str, namespace: str) -> Optional[client.V1Deployment]:
        """Read a Deployment, returning None if it does not exist."""
        try:
            return await asyncio.to_thread(
                self.apps_v1.read_namespaced_deployment,
                name=name,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def create_deployment(self, deployment: client.V1Deployment, namespace: str) -> None:
        """Create or update a Deployment."""
        deployment_name = deployment.metadata.name
        try:
            await asyncio.to_thread(
                self.apps_v1.create_namespaced_deployment,
                namespace=namespace,
                body=deployment
            )
            logger.info(f"[K8S] ✅ Created deployment: {deployment_name}")
        except ApiException as e:
            if e.status == 409:
                logger.info(f"[K8S] Deployment {deployment_name} exists, updating...")
                await self.patch_deployment(deployment, namespace)
            else:
                raise

    async def patch_deployment(self, deployment: client.V1Deployment, namespace: str) -> None:
        await asyncio.to_thread(
            self.apps_v1.patch_namespaced_deployment,
            name=deployment.metadata.name,
            namespace=namespace,
            body=deployment
        )
        logger.info(f"[K8S] ✅ Updated deployment: {deployment.metadata.name}")

    async def create_service(self, service: client.V1Service, namespace: str) -> None:
        try:
            await asyncio.to_thread(
                self.core_v1.create_namespaced_service,
                namespace=namespace,
                body=service
            )
            logger.info(f"[K8S] ✅ Created service: {service.metadata.name}")
        except ApiException as e:
            if e.status != 409:
                raise
            logger.debug(f"[K8S] Service {service.metadata.name} already exists")

    async def apply_secret(self, secret: client.V1Secret, namespace: str) -> None:
        """Create a Secret, replacing it if it already exists."""
        secret_name = secret.metadata.name
        try:
            await asyncio.to_thread(
                self.core_v1.create_namespaced_secret,
                namespace=namespace,
                body=secret
            )
            logger.info(f"[K8S] ✅ Created secret: {namespace}/{secret_name}")
        except ApiException as e:
            if e.status == 409:
                await asyncio.to_thread(
                    self.core_v1.replace_namespaced_secret,
                    name=secret_name,
                    namespace=namespace,
                    body=secret
                )
                logger.info(f"[K8S] ✅ Updated secret: {namespace}/{secret_name}")
            else:
                raise

    async def delete_resource(self, delete_fn, name: str, namespace: Optional[str] = None) -> None:
        """
        Delete a resource with foreground propagation, ignoring 404s.

        Args:
            delete_fn: Bound delete method, e.g. self.apps_v1.delete_namespaced_deployment
            name: Resource name
            namespace: Namespace (omit for cluster-scoped resources)
        """
        kwargs = {
            "name": name,
            "body": client.V1DeleteOptions(propagation_policy="Foreground"),
        }
        if namespace is not None:
            kwargs["namespace"] = namespace

        try:
            await asyncio.to_thread(delete_fn, **kwargs)
            logger.info(f"[K8S] Deleted {name}")
        except ApiException as e:
            if e.status != 404:
                raise

    # =========================================================================
    # PODS
    # =========================================================================

    async def list_pods(self, namespace: str, label_selector: Optional[str] = None) -> List[client.V1Pod]:
        pods = await asyncio.to_thread(
            self.core_v1.list_namespaced_pod,
            namespace=namespace,
            label_selector=label_selector
        )
        return list(pods.items)

    async def get_first_running_pod(self, label_selector: str, namespace: str) -> Optional[client.V1Pod]:
        """
        Get the first running pod matching a label selector.

        Returns:
            The pod, or None if no matching pod is currently running
        """
        for pod in await self.list_pods(namespace, label_selector):
            if is_pod_running(pod):
                return pod
        return None

    async def wait_for_release_pod(
        self,
        release_name: str,
        namespace: str,
        revision: int,
        timeout: float = 120.0,
        interval: float = 2.0
    ) -> client.V1Pod:
        """
        Wait until a pod of the given release revision is ready.

        Pods without a revision annotation are accepted, so charts that do
        not stamp the revision still work; pods from older revisions are not.

        Raises:
            ReleasePodTimeoutError: If no matching pod became ready within timeout
        """
        label_selector = f"release={release_name}"

        async def _ready_pod() -> Optional[client.V1Pod]:
            for pod in await self.list_pods(namespace, label_selector):
                annotations = (pod.metadata.annotations or {}) if pod.metadata else {}
                pod_revision = annotations.get(REVISION_ANNOTATION)
                if pod_revision is not None and pod_revision != str(revision):
                    continue
                if is_pod_ready(pod):
                    return pod
            return None

        try:
            pod = await poll_until(
                _ready_pod,
                interval=interval,
                timeout=timeout,
                description=f"release pod {namespace}/{release_name} (revision {revision})"
            )
        except PollingTimeout as e:
            raise ReleasePodTimeoutError(
                f"Release pod of {namespace}/{release_name} (revision {revision}) "
                f"did not become ready within {timeout:g} seconds"
            ) from e

        logger.info(f"[K8S] ✅ Release pod {namespace}/{pod.metadata.name} is ready")
        return pod
