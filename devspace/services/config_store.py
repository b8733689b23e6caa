"""
Reading and writing .devspace/config.yaml (plus overwrite.yaml).

The effective configuration is config.yaml with overwrite.yaml merged over
it as a value tree. Saving only ever touches config.yaml and only writes
fields that were explicitly set, so overwrite values and model defaults
never end up in the committed file.
"""

import logging
import os
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from ..config import Settings, get_settings
from ..errors import ConfigError
from ..schemas import Config
from ..utils.values import merge_values

logger = logging.getLogger(__name__)

GITIGNORE_CONTENT = "logs/\noverwrite.yaml\n"


def read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return data


class ConfigStore:
    """Config files of one project directory."""

    def __init__(self, workdir: str = ".", settings: Optional[Settings] = None):
        self.workdir = workdir
        self.settings = settings or get_settings()

    @property
    def config_dir(self) -> str:
        return os.path.join(self.workdir, self.settings.config_dir)

    @property
    def config_path(self) -> str:
        return os.path.join(self.config_dir, self.settings.config_file)

    @property
    def overwrite_path(self) -> str:
        return os.path.join(self.config_dir, self.settings.overwrite_file)

    def exists(self) -> bool:
        return os.path.isfile(self.config_path)

    def _validate(self, data: Dict[str, Any], source: str) -> Config:
        try:
            return Config.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {source}: {e}") from e

    def load_base(self) -> Config:
        """config.yaml alone; the form every mutating command edits."""
        if not self.exists():
            raise ConfigError(f"Couldn't find {self.config_path}. Please run `devspace init` first")
        return self._validate(read_yaml(self.config_path), self.config_path)

    def load(self) -> Config:
        """config.yaml with overwrite.yaml merged over it."""
        if not self.exists():
            raise ConfigError(f"Couldn't find {self.config_path}. Please run `devspace init` first")

        data = read_yaml(self.config_path)
        if os.path.isfile(self.overwrite_path):
            data = merge_values(data, read_yaml(self.overwrite_path))
            logger.debug(f"Merged {self.overwrite_path} into configuration")
        return self._validate(data, self.config_path)

    def save(self, config: Config) -> None:
        """
        Write the explicitly set fields of `config` to config.yaml.

        Keys the models don't know about are kept from the existing file.
        """
        created = not os.path.isdir(self.config_dir)
        os.makedirs(self.config_dir, exist_ok=True)

        existing = read_yaml(self.config_path) if self.exists() else {}
        data = merge_values(existing, config.model_dump(by_alias=True, exclude_unset=True))

        tmp_path = f"{self.config_path}.tmp"
        with open(tmp_path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        os.replace(tmp_path, self.config_path)

        if created:
            with open(os.path.join(self.config_dir, ".gitignore"), "w") as f:
                f.write(GITIGNORE_CONTENT)
        logger.info(f"Saved configuration to {self.config_path}")
