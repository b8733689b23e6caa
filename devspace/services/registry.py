"""
Registry helpers: image references, pull secret names and pull secrets.
"""

import logging
from typing import Dict, List, Optional

from kubernetes.client.rest import ApiException

from ..errors import ConfigError, DeploymentError
from ..kubernetes import helpers
from ..schemas import Config, ImageConfig
from ..utils.resource_naming import get_registry_auth_secret_name, registry_host

logger = logging.getLogger(__name__)

DEFAULT_PULL_SECRET_EMAIL = "noreply@devspace-cloud.com"


def get_image_url(
    config: Config,
    image: ImageConfig,
    image_tags: Optional[Dict[str, str]] = None,
    include_tag: bool = True
) -> str:
    """
    Resolve the full reference of a declared image.

    The tag is taken from the generated state (last built tag), then from
    the image config, then defaults to "latest".

    Raises:
        ConfigError: If the image references an undeclared registry
    """
    reference = image.name
    if image.registry:
        registry = config.registries.get(image.registry)
        if registry is None:
            raise ConfigError(f"Image {image.name} references unknown registry {image.registry}")
        if registry.url:
            reference = f"{registry_host(registry.url)}/{image.name}"

    if not include_tag:
        return reference

    tag = (image_tags or {}).get(image.name) or image.tag or "latest"
    return f"{reference}:{tag}"


def get_pull_secret_names(config: Config) -> List[str]:
    """Pull secret names for every registry that declares a URL."""
    return [
        get_registry_auth_secret_name(registry.url)
        for registry in config.registries.values()
        if registry.url
    ]


async def create_pull_secret(
    kube,
    namespace: str,
    registry_url: str,
    username: str,
    password: str,
    email: str = DEFAULT_PULL_SECRET_EMAIL
) -> str:
    """
    Create or update the image pull secret for a registry.

    Returns:
        The secret name
    """
    name = get_registry_auth_secret_name(registry_url)
    secret = helpers.create_pull_secret_manifest(
        name=name,
        namespace=namespace,
        registry_url=registry_host(registry_url),
        username=username,
        password=password,
        email=email,
    )
    await kube.apply_secret(secret, namespace)
    return name


async def init_registries(kube, config: Config) -> List[str]:
    """
    Create pull secrets for every registry with credentials.

    Returns:
        Names of the secrets created or updated
    """
    namespace = config.dev_space.release.namespace
    created = []

    for registry_name, registry in config.registries.items():
        if not registry.auth or not registry.auth.password:
            continue
        if not registry.url:
            raise ConfigError(f"Registry {registry_name} has credentials but no url")

        logger.info(f"[REGISTRY] Creating image pull secret for registry: {registry_name}")
        try:
            secret_name = await create_pull_secret(
                kube,
                namespace,
                registry.url,
                registry.auth.username or "",
                registry.auth.password,
            )
        except ApiException as e:
            raise DeploymentError(
                f"Unable to create image pull secret for registry {registry_name}: {e.reason}"
            ) from e
        created.append(secret_name)

    return created
