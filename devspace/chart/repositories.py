"""
Local chart repository cache.

Layout under the helm home directory:

    cache/
    repository/repositories.yaml
    repository/cache/<name>-index.yaml

The repositories file is created with a single default repository when it
does not exist yet. A missing index triggers a refresh of every
repository, one task per repository. Refreshes are best effort: a failing
repository is logged and skipped.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import List, Optional

import httpx
import yaml

from ..errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class ChartRepository:
    name: str
    url: str
    cache: str  # Index file path, relative to helm home unless absolute


class RepositoryManager:
    """Manages repositories.yaml and the downloaded repository indexes."""

    def __init__(
        self,
        helm_home: str,
        default_name: str = "stable",
        default_url: str = "https://charts.helm.sh/stable",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.helm_home = os.path.expanduser(helm_home)
        self.default_name = default_name
        self.default_url = default_url
        self.timeout = timeout
        self._transport = transport

    @property
    def repository_path(self) -> str:
        return os.path.join(self.helm_home, "repository")

    @property
    def repository_file(self) -> str:
        return os.path.join(self.repository_path, "repositories.yaml")

    def default_repositories(self) -> dict:
        return {
            "apiVersion": "v1",
            "repositories": [
                {
                    "caFile": "",
                    "cache": f"repository/cache/{self.default_name}-index.yaml",
                    "certFile": "",
                    "keyFile": "",
                    "name": self.default_name,
                    "url": self.default_url,
                }
            ],
        }

    def ensure_layout(self) -> bool:
        """
        Create the cache directories and a default repositories.yaml.

        Returns:
            True if repositories.yaml had to be created
        """
        os.makedirs(os.path.join(self.helm_home, "cache"), exist_ok=True)
        os.makedirs(os.path.join(self.repository_path, "cache"), exist_ok=True)

        if os.path.exists(self.repository_file):
            return False

        with open(self.repository_file, "w") as f:
            yaml.safe_dump(self.default_repositories(), f, default_flow_style=False)
        logger.info(f"[REPO] Created default repository file {self.repository_file}")
        return True

    def load_repositories(self) -> List[ChartRepository]:
        try:
            with open(self.repository_file) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing {self.repository_file}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{self.repository_file} must contain a mapping")

        repositories = []
        for entry in data.get("repositories") or []:
            name = entry.get("name") if isinstance(entry, dict) else None
            url = entry.get("url") if isinstance(entry, dict) else None
            if not name or not url:
                logger.warning(f"[REPO] Skipping invalid repository entry: {entry}")
                continue
            cache = entry.get("cache") or f"repository/cache/{name}-index.yaml"
            repositories.append(ChartRepository(name=name, url=url, cache=cache))
        return repositories

    def index_path(self, repository: ChartRepository) -> str:
        if os.path.isabs(repository.cache):
            return repository.cache
        return os.path.join(self.helm_home, repository.cache)

    def missing_indexes(self) -> List[ChartRepository]:
        return [r for r in self.load_repositories() if not os.path.exists(self.index_path(r))]

    async def download_index(self, client: httpx.AsyncClient, repository: ChartRepository) -> str:
        """Download <url>/index.yaml into the repository's cache file."""
        url = repository.url.rstrip("/") + "/index.yaml"
        response = await client.get(url, follow_redirects=True)
        response.raise_for_status()

        # Reject anything that is not a YAML index before it replaces the cache
        index = yaml.safe_load(response.text)
        if not isinstance(index, dict) or "entries" not in index:
            raise ValueError(f"{url} is not a chart repository index")

        path = self.index_path(repository)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w") as f:
            f.write(response.text)
        os.replace(tmp_path, path)

        logger.debug(f"[REPO] Updated index for {repository.name}")
        return path

    async def update_repositories(self, repositories: Optional[List[ChartRepository]] = None) -> List[str]:
        """
        Refresh repository indexes in parallel.

        Returns:
            Names of repositories whose refresh failed
        """
        if repositories is None:
            repositories = self.load_repositories()
        if not repositories:
            return []

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            results = await asyncio.gather(
                *(self.download_index(client, repo) for repo in repositories),
                return_exceptions=True
            )

        failed = []
        for repo, result in zip(repositories, results):
            if isinstance(result, BaseException):
                logger.error(f"[REPO] Unable to download repo index for {repo.name}: {result}")
                failed.append(repo.name)
        return failed

    async def prepare(self) -> List[str]:
        """
        Ensure the local layout exists and, when any repository index is
        not cached yet, refresh every configured repository.

        Returns:
            Names of repositories whose refresh failed
        """
        await asyncio.to_thread(self.ensure_layout)
        repositories = await asyncio.to_thread(self.load_repositories)
        if all(os.path.exists(self.index_path(r)) for r in repositories):
            return []
        return await self.update_repositories(repositories)
