"""
Naming utilities for cluster resources derived from user configuration.

Centralized so that the deployment pipeline (which references pull secrets
in chart values) and the registry initializer (which creates them) always
agree on the same names.
"""

import re
from typing import Dict
from urllib.parse import urlparse

_INVALID_CHARS = re.compile(r"[^a-z0-9-]+")


def to_dns_label(value: str, max_length: int = 63) -> str:
    """
    Convert an arbitrary string into a valid DNS-1123 label.

    Examples:
        >>> to_dns_label("registry.example.com:5000")
        "registry-example-com-5000"
    """
    label = _INVALID_CHARS.sub("-", value.lower()).strip("-")
    return label[:max_length].rstrip("-")


def registry_host(registry_url: str) -> str:
    """Strip scheme and path from a registry URL ("https://hub.io/v2" -> "hub.io")."""
    if "://" not in registry_url:
        registry_url = f"//{registry_url}"
    parsed = urlparse(registry_url)
    return parsed.netloc or parsed.path


def get_registry_auth_secret_name(registry_url: str) -> str:
    """
    Get the image pull secret name for a registry.

    Examples:
        >>> get_registry_auth_secret_name("https://registry.example.com")
        "devspace-auth-registry-example-com"
    """
    return f"devspace-auth-{to_dns_label(registry_host(registry_url))}"[:63].rstrip("-")


def build_label_selector(labels: Dict[str, str]) -> str:
    """
    Render a label map as a Kubernetes label selector string.

    Keys are sorted so the same map always yields the same selector.

    Examples:
        >>> build_label_selector({"release": "test", "app": "web"})
        "app=web,release=test"
    """
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def parse_label_selector(selector: str) -> Dict[str, str]:
    """
    Parse "key=value,key2=value2" into a dict.

    Raises:
        ValueError: If an item has no "=" or an empty key
    """
    labels: Dict[str, str] = {}
    if not selector or not selector.strip():
        return labels

    for item in selector.split(","):
        item = item.strip()
        if not item:
            continue
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid selector item '{item}', expected key=value")
        labels[key.strip()] = value.strip()

    return labels
