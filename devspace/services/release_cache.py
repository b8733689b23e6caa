"""
Release cache

Keeps the content fingerprint of the chart directory and the release
revision of the last successful deployment in .devspace/generated.yaml.
The pipeline compares a fresh fingerprint against the cached one to decide
whether a redeploy is needed, and writes the cache only after the release
pod became ready.
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Optional

import yaml
from pydantic import ValidationError

from ..errors import ConfigError
from ..schemas import GeneratedConfig

logger = logging.getLogger(__name__)

_READ_CHUNK = 1024 * 1024


def _hash_file(path: str) -> bytes:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_READ_CHUNK), b""):
            digest.update(chunk)
    return digest.digest()


def fingerprint_directory(path: str) -> str:
    """
    Compute a deterministic content hash of a directory tree.

    Files are visited in sorted relative-path order and both the path and
    the content of each file feed the digest, so the result does not depend
    on filesystem iteration order but changes with any renamed, added,
    removed or modified file.

    Raises:
        FileNotFoundError: If `path` is not a directory
    """
    if not os.path.isdir(path):
        raise FileNotFoundError(f"Directory not found: {path}")

    entries = []
    for root, dirs, files in os.walk(path):
        for file_name in files:
            full_path = os.path.join(root, file_name)
            rel_path = os.path.relpath(full_path, path).replace(os.sep, "/")
            entries.append((rel_path, full_path))

    digest = hashlib.sha256()
    for rel_path, full_path in sorted(entries):
        digest.update(rel_path.encode("utf-8"))
        digest.update(b"\0")
        digest.update(_hash_file(full_path))
    return digest.hexdigest()


@dataclass
class ReleaseFingerprint:
    chart_hash: Optional[str] = None
    revision: Optional[int] = None


class ReleaseCache:
    """Reads and writes the deployment fields of generated.yaml."""

    def __init__(self, path: str):
        self.path = path

    def fingerprint(self, chart_path: str) -> str:
        return fingerprint_directory(chart_path)

    def load_generated(self) -> GeneratedConfig:
        if not os.path.exists(self.path):
            return GeneratedConfig()
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
            return GeneratedConfig.model_validate(data)
        except (yaml.YAMLError, ValidationError) as e:
            raise ConfigError(f"Error reading {self.path}: {e}") from e

    def load(self) -> ReleaseFingerprint:
        generated = self.load_generated()
        return ReleaseFingerprint(
            chart_hash=generated.helm_chart_hash,
            revision=generated.release_revision,
        )

    def save(self, chart_hash: str, revision: int) -> None:
        """
        Persist the fingerprint of a successful deployment.

        Other keys in generated.yaml are preserved; the file is replaced
        atomically so an interrupted write never leaves a partial cache.
        """
        generated = self.load_generated()
        generated.helm_chart_hash = chart_hash
        generated.release_revision = revision

        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w") as f:
            yaml.safe_dump(
                generated.model_dump(by_alias=True, exclude_none=True),
                f,
                default_flow_style=False
            )
        os.replace(tmp_path, self.path)
        logger.debug(f"[CACHE] Saved chart hash {chart_hash[:12]} (revision {revision})")
