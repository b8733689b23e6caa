"""
Typed models for .devspace/config.yaml and .devspace/generated.yaml.

On disk every key is camelCase; in Python the attributes are snake_case.
Fields left out of the YAML stay "unset" (see `model_fields_set`), which is
what lets the config store write back only what the user actually declared.
"""

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict


class ConfigModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "ignore"


# =============================================================================
# Sessions (sync / port forwarding)
# =============================================================================

class PortMapping(ConfigModel):
    local_port: int
    remote_port: int

    def as_pair(self) -> str:
        return f"{self.local_port}:{self.remote_port}"


class PortForwardingConfig(ConfigModel):
    namespace: Optional[str] = None
    resource_type: Optional[str] = None  # Only "pod" (or unset) is supported
    label_selector: Dict[str, str] = Field(default_factory=dict)
    port_mappings: List[PortMapping] = Field(default_factory=list)


class BandwidthLimits(ConfigModel):
    download: Optional[int] = None  # KB/s
    upload: Optional[int] = None  # KB/s


class SyncConfig(ConfigModel):
    namespace: Optional[str] = None
    label_selector: Dict[str, str] = Field(default_factory=dict)
    container_name: Optional[str] = None
    local_sub_path: str = "./"
    container_path: str = "/app"
    exclude_paths: List[str] = Field(default_factory=list)
    download_exclude_paths: List[str] = Field(default_factory=list)
    upload_exclude_paths: List[str] = Field(default_factory=list)
    bandwidth_limits: Optional[BandwidthLimits] = None


# =============================================================================
# Release / deployments
# =============================================================================

class ReleaseConfig(ConfigModel):
    name: str = "devspace"
    namespace: str = "default"


class HelmConfig(ConfigModel):
    chart_path: str = "chart/"


class DeploymentConfig(ConfigModel):
    name: str
    namespace: Optional[str] = None
    helm: Optional[HelmConfig] = None


class TerminalConfig(ConfigModel):
    container_name: Optional[str] = None
    command: List[str] = Field(default_factory=list)


class DevSpaceConfig(ConfigModel):
    release: ReleaseConfig = Field(default_factory=ReleaseConfig)
    deployments: List[DeploymentConfig] = Field(default_factory=list)
    ports: List[PortForwardingConfig] = Field(default_factory=list)
    sync: List[SyncConfig] = Field(default_factory=list)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)


# =============================================================================
# Images and registries
# =============================================================================

class ImageConfig(ConfigModel):
    name: str
    registry: Optional[str] = None  # Key into Config.registries
    tag: Optional[str] = None


class RegistryAuth(ConfigModel):
    username: Optional[str] = None
    password: Optional[str] = None


class RegistryConfig(ConfigModel):
    url: Optional[str] = None
    auth: Optional[RegistryAuth] = None


# =============================================================================
# Cluster / backend
# =============================================================================

class TillerConfig(ConfigModel):
    namespace: Optional[str] = None  # Defaults to the release namespace


class ClusterConfig(ConfigModel):
    kube_context: Optional[str] = None
    cloud_provider: Optional[str] = None
    use_kube_config: bool = True


class Config(ConfigModel):
    version: str = "v1"
    dev_space: DevSpaceConfig = Field(default_factory=DevSpaceConfig)
    images: Dict[str, ImageConfig] = Field(default_factory=dict)
    registries: Dict[str, RegistryConfig] = Field(default_factory=dict)
    tiller: TillerConfig = Field(default_factory=TillerConfig)
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)

    @property
    def backend_namespace(self) -> str:
        return self.tiller.namespace or self.dev_space.release.namespace


class GeneratedConfig(ConfigModel):
    """State written by devspace itself after a successful deployment."""
    helm_chart_hash: Optional[str] = None
    release_revision: Optional[int] = None
    image_tags: Dict[str, str] = Field(default_factory=dict)
