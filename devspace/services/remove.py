"""
`devspace remove sync|port|package`

Each operation refuses to run unless at least one selecting flag was given,
then edits config.yaml (sync, port) or the chart's requirements.yaml
(package).
"""

import logging
import os
from typing import Dict, List, Optional

import yaml

from ..errors import ConfigError, DevSpaceError
from ..utils.async_subprocess import check_command_exists, run_async
from ..utils.resource_naming import parse_label_selector
from .config_store import ConfigStore, read_yaml
from .deployment import resolve_chart_path

logger = logging.getLogger(__name__)

NO_FLAGS_MESSAGE = "You have to specify at least one of the supported flags"


def _parse_selector(selector: Optional[str]) -> Dict[str, str]:
    try:
        return parse_label_selector(selector or "")
    except ValueError as e:
        raise ConfigError(f"Error parsing selectors: {e}") from e


def _parse_ports(ports: Optional[str]) -> List[int]:
    parsed = []
    for item in (ports or "").split(","):
        item = item.strip()
        if not item:
            continue
        try:
            parsed.append(int(item))
        except ValueError as e:
            raise ConfigError(f"Invalid port '{item}'") from e
    return parsed


# =============================================================================
# SYNC / PORT
# =============================================================================

def remove_sync(
    store: ConfigStore,
    selector: Optional[str] = None,
    local_path: Optional[str] = None,
    container_path: Optional[str] = None,
    remove_all: bool = False
) -> int:
    """
    Drop sync declarations matching any of the given criteria.

    Returns:
        Number of removed declarations
    """
    labels = _parse_selector(selector)
    if not (labels or local_path or container_path or remove_all):
        raise ConfigError(NO_FLAGS_MESSAGE)

    config = store.load_base()
    kept = [
        sync for sync in config.dev_space.sync
        if not (
            remove_all
            or (local_path and sync.local_sub_path == local_path)
            or (container_path and sync.container_path == container_path)
            or (labels and sync.label_selector == labels)
        )
    ]
    removed = len(config.dev_space.sync) - len(kept)
    if removed:
        config.dev_space.sync = kept
        store.save(config)
    logger.info(f"Removed {removed} sync path(s)")
    return removed


def remove_port(
    store: ConfigStore,
    ports: Optional[str] = None,
    selector: Optional[str] = None,
    remove_all: bool = False
) -> int:
    """
    Drop port forwarding declarations and port mappings.

    A declaration is dropped when its selector matches; otherwise every
    mapping whose local or remote port is listed is dropped, and a
    declaration left without mappings goes with it.

    Returns:
        Number of removed port mappings
    """
    labels = _parse_selector(selector)
    port_numbers = _parse_ports(ports)
    if not (labels or port_numbers or remove_all):
        raise ConfigError(NO_FLAGS_MESSAGE)

    config = store.load_base()
    before = sum(len(p.port_mappings) for p in config.dev_space.ports)

    kept = []
    for forward in config.dev_space.ports:
        if remove_all or (labels and forward.label_selector == labels):
            continue
        mappings = [
            m for m in forward.port_mappings
            if m.local_port not in port_numbers and m.remote_port not in port_numbers
        ]
        if mappings:
            if len(mappings) != len(forward.port_mappings):
                forward.port_mappings = mappings
            kept.append(forward)

    removed = before - sum(len(p.port_mappings) for p in kept)
    if removed or len(kept) != len(config.dev_space.ports):
        config.dev_space.ports = kept
        store.save(config)
    logger.info(f"Removed {removed} port mapping(s)")
    return removed


# =============================================================================
# PACKAGE
# =============================================================================

async def update_dependencies(chart_path: str) -> None:
    if not await check_command_exists("helm"):
        raise DevSpaceError("helm is required to update chart dependencies but was not found in PATH")
    logger.info("Update chart dependencies")
    try:
        await run_async(["helm", "dependency", "update", chart_path], timeout=300, check=True)
    except RuntimeError as e:
        raise DevSpaceError(str(e)) from e


async def remove_package(
    store: ConfigStore,
    package: Optional[str] = None,
    deployment: Optional[str] = None,
    remove_all: bool = False
) -> bool:
    """
    Remove one (or every) dependency from the chart's requirements.yaml
    and rebuild the chart dependencies.

    Returns:
        True if requirements.yaml was changed
    """
    if not package and not remove_all:
        raise ConfigError("You need to specify a package name or the --all flag")

    config = store.load()
    chart_path = os.path.abspath(
        os.path.join(store.workdir, resolve_chart_path(config, deployment, store.settings.chart_path))
    )
    requirements_path = os.path.join(chart_path, "requirements.yaml")
    if not os.path.isfile(requirements_path):
        raise ConfigError(f"Couldn't find {requirements_path}")

    requirements = read_yaml(requirements_path)
    dependencies = requirements.get("dependencies")
    if dependencies is None:
        logger.info("No dependencies found")
        return False
    if not isinstance(dependencies, list):
        raise ConfigError(f"Error parsing yaml: {dependencies}")

    if remove_all:
        kept = []
    else:
        kept = [d for d in dependencies if not (isinstance(d, dict) and d.get("name") == package)]
        if len(kept) == len(dependencies):
            logger.warning(f"Package {package} not found in {requirements_path}")
            return False

    requirements["dependencies"] = kept
    with open(requirements_path, "w") as f:
        yaml.safe_dump(requirements, f, default_flow_style=False, sort_keys=False)

    await update_dependencies(chart_path)
    logger.info("✅ Successfully removed all dependencies" if remove_all else f"✅ Successfully removed dependency {package}")
    return True
