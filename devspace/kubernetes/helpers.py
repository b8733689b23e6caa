"""
Manifest builders for the chart backend and registry pull secrets.

The backend runs as a single-replica Deployment behind a ClusterIP Service,
using a dedicated ServiceAccount that is granted full access to the
namespaces it deploys into through a Role/RoleBinding pair per namespace.
"""

from kubernetes import client
from typing import Dict, List
import base64
import json
import logging

logger = logging.getLogger(__name__)

BACKEND_LABELS = {"app": "helm", "name": "tiller"}


# =============================================================================
# Labels
# =============================================================================

def get_standard_labels(component: str) -> Dict[str, str]:
    """
    Get standard labels for resources created by devspace.

    Args:
        component: Component name (chart-backend, registry-auth, ...)

    Returns:
        Dict of labels
    """
    return {
        "app.kubernetes.io/managed-by": "devspace",
        "devspace.io/component": component,
    }


# =============================================================================
# Namespace / RBAC
# =============================================================================

def create_namespace_manifest(namespace: str) -> client.V1Namespace:
    return client.V1Namespace(
        metadata=client.V1ObjectMeta(
            name=namespace,
            labels=get_standard_labels("namespace")
        )
    )


def create_service_account_manifest(name: str, namespace: str) -> client.V1ServiceAccount:
    return client.V1ServiceAccount(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=get_standard_labels("chart-backend")
        )
    )


def create_backend_role_manifest(role_name: str, namespace: str) -> client.V1Role:
    """
    Create the Role the chart backend needs in a namespace it deploys into.

    Releases may contain any kind of namespaced resource, so the role
    grants every verb on every resource of every API group.
    """
    return client.V1Role(
        metadata=client.V1ObjectMeta(
            name=role_name,
            namespace=namespace,
            labels=get_standard_labels("chart-backend")
        ),
        rules=[
            client.V1PolicyRule(
                api_groups=["*"],
                resources=["*"],
                verbs=["*"]
            )
        ]
    )


def create_backend_role_binding_manifest(
    role_name: str,
    namespace: str,
    service_account: str,
    service_account_namespace: str
) -> client.V1RoleBinding:
    """
    Bind the backend Role in `namespace` to the backend ServiceAccount.

    Args:
        role_name: Role to bind (binding is named "<role_name>-binding")
        namespace: Namespace holding the Role
        service_account: ServiceAccount name
        service_account_namespace: Namespace of the ServiceAccount (backend namespace)
    """
    return client.V1RoleBinding(
        metadata=client.V1ObjectMeta(
            name=f"{role_name}-binding",
            namespace=namespace,
            labels=get_standard_labels("chart-backend")
        ),
        role_ref=client.V1RoleRef(
            api_group="rbac.authorization.k8s.io",
            kind="Role",
            name=role_name
        ),
        subjects=[
            client.RbacV1Subject(
                kind="ServiceAccount",
                name=service_account,
                namespace=service_account_namespace
            )
        ]
    )


# =============================================================================
# Chart backend Deployment / Service
# =============================================================================

def create_backend_deployment_manifest(
    name: str,
    namespace: str,
    image: str,
    service_account: str,
    port: int,
    max_history: int = 10
) -> client.V1Deployment:
    """
    Create the chart backend Deployment.

    Args:
        name: Deployment name
        namespace: Backend namespace
        image: Backend image reference
        service_account: ServiceAccount the backend runs as
        port: Port the backend API listens on
        max_history: Number of release revisions the backend keeps

    Returns:
        V1Deployment manifest
    """
    labels = {**BACKEND_LABELS, **get_standard_labels("chart-backend")}

    container = client.V1Container(
        name="tiller",
        image=image,
        image_pull_policy="IfNotPresent",
        ports=[
            client.V1ContainerPort(name="tiller", container_port=port),
        ],
        env=[
            client.V1EnvVar(name="TILLER_NAMESPACE", value=namespace),
            client.V1EnvVar(name="TILLER_HISTORY_MAX", value=str(max_history)),
        ],
        readiness_probe=client.V1Probe(
            tcp_socket=client.V1TCPSocketAction(port=port),
            initial_delay_seconds=1,
            period_seconds=5
        ),
    )

    return client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels
        ),
        spec=client.V1DeploymentSpec(
            replicas=1,
            selector=client.V1LabelSelector(match_labels=dict(BACKEND_LABELS)),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(
                    service_account_name=service_account,
                    automount_service_account_token=True,
                    containers=[container]
                )
            )
        )
    )


def create_backend_service_manifest(name: str, namespace: str, port: int) -> client.V1Service:
    return client.V1Service(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels={**BACKEND_LABELS, **get_standard_labels("chart-backend")}
        ),
        spec=client.V1ServiceSpec(
            type="ClusterIP",
            selector=dict(BACKEND_LABELS),
            ports=[
                client.V1ServicePort(name="tiller", port=port, target_port="tiller")
            ]
        )
    )


# =============================================================================
# Registry pull secrets
# =============================================================================

def create_pull_secret_manifest(
    name: str,
    namespace: str,
    registry_url: str,
    username: str,
    password: str,
    email: str
) -> client.V1Secret:
    """
    Create a kubernetes.io/dockerconfigjson secret for a private registry.

    Returns:
        V1Secret manifest with the encoded docker config
    """
    auth = base64.b64encode(f"{username}:{password}".encode()).decode()
    docker_config = {
        "auths": {
            registry_url: {
                "username": username,
                "password": password,
                "email": email,
                "auth": auth,
            }
        }
    }

    return client.V1Secret(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=get_standard_labels("registry-auth")
        ),
        type="kubernetes.io/dockerconfigjson",
        data={
            ".dockerconfigjson": base64.b64encode(json.dumps(docker_config).encode()).decode()
        }
    )


def get_container_names(pod: client.V1Pod) -> List[str]:
    if not pod.spec or not pod.spec.containers:
        return []
    return [c.name for c in pod.spec.containers]
