from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Literal


class Settings(BaseSettings):
    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # ==========================================================================
    # Project files (relative to the working directory)
    # ==========================================================================
    config_dir: str = ".devspace"
    config_file: str = "config.yaml"
    overwrite_file: str = "overwrite.yaml"  # Optional local overrides, never committed
    generated_file: str = "generated.yaml"  # Last deployed chart hash / revision
    chart_path: str = "chart"

    # Local chart repository cache
    helm_home: str = "~/.devspace/helm"
    default_repository_name: str = "stable"
    default_repository_url: str = "https://charts.helm.sh/stable"
    repository_timeout_seconds: float = 30.0

    # ==========================================================================
    # Chart backend (in-cluster release server)
    # ==========================================================================
    backend_deployment_name: str = "tiller-deploy"
    backend_service_account: str = "devspace-tiller"
    backend_role: str = "devspace-tiller-role"
    backend_image: str = "gcr.io/kubernetes-helm/tiller:v2.11.0"
    backend_port: int = 44134
    backend_max_history: int = 10
    backend_request_timeout_seconds: float = 30.0

    # ==========================================================================
    # Waiting and polling
    # ==========================================================================
    poll_interval_seconds: float = 5.0  # Interval between readiness checks
    wait_timeout_seconds: float = 120.0  # Budget per bootstrap stage
    release_pod_timeout_seconds: float = 120.0  # Max wait for a deployed release pod
    port_forward_ready_seconds: float = 5.0  # Warn (not fail) after this long

    # ==========================================================================
    # Sessions
    # ==========================================================================
    # "abort": a sync session that fails to start aborts the whole workflow
    # "isolate": the failure is logged and the remaining sessions keep running
    session_failure_policy: Literal["abort", "isolate"] = "abort"
    sync_poll_interval_seconds: float = 1.0

    # Cluster role binding users need on non-minikube clusters
    cluster_role_binding_name: str = "devspace-users"

    class Config:
        env_prefix = "DEVSPACE_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        case_sensitive = False


@lru_cache()
def get_settings():
    return Settings()
