"""
Chart backend client

Talks to the in-cluster chart backend through the local tunnel. Charts are
packaged from a local directory into an in-memory .tgz and sent together
with the merged values; the backend answers with the release revision it
assigned.
"""

import base64
import io
import logging
import os
import tarfile
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from ..errors import ChartBackendError, ReleaseNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class Release:
    """One named, versioned deployment of a chart."""
    name: str
    namespace: str
    revision: int
    status: str = "UNKNOWN"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Release":
        return cls(
            name=data["name"],
            namespace=data.get("namespace", ""),
            revision=int(data.get("version", data.get("revision", 0))),
            status=data.get("status", "UNKNOWN"),
        )


def package_chart(chart_path: str) -> bytes:
    """
    Package a chart directory as a gzipped tarball.

    Entries are added in sorted order under the chart directory name, the
    same layout `helm package` produces.
    """
    chart_path = os.path.abspath(chart_path)
    if not os.path.isfile(os.path.join(chart_path, "Chart.yaml")):
        raise ChartBackendError(f"{chart_path} is not a chart directory (Chart.yaml missing)")

    chart_name = os.path.basename(chart_path.rstrip(os.sep))
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for root, dirs, files in os.walk(chart_path):
            dirs.sort()
            for file_name in sorted(files):
                full_path = os.path.join(root, file_name)
                rel_path = os.path.relpath(full_path, chart_path)
                tar.add(full_path, arcname=f"{chart_name}/{rel_path}")
    return buffer.getvalue()


class ChartBackendClient:
    """
    HTTP client for the chart backend API.

    All methods raise ChartBackendError on transport or server errors and
    ReleaseNotFoundError when the backend reports an unknown release.
    """

    def __init__(self, endpoint: str, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.endpoint = endpoint
        self._client = httpx.AsyncClient(
            base_url=endpoint,
            timeout=timeout,
            transport=transport
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, release_name: Optional[str] = None, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404 and release_name is not None:
                raise ReleaseNotFoundError(release_name) from e
            raise ChartBackendError(
                f"Chart backend {method} {path} failed ({e.response.status_code}): {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise ChartBackendError(f"Chart backend {method} {path} failed: {e}") from e

        if not response.content:
            return {}
        return response.json()

    # =========================================================================
    # RELEASES
    # =========================================================================

    async def list_releases(self, limit: Optional[int] = None) -> List[Release]:
        params = {"limit": limit} if limit is not None else {}
        data = await self._request("GET", "/api/v1/releases", params=params)
        return [Release.from_dict(item) for item in data.get("releases", [])]

    async def release_history(self, release_name: str, max_history: int = 1) -> List[Release]:
        data = await self._request(
            "GET",
            f"/api/v1/releases/{release_name}/history",
            release_name=release_name,
            params={"max": max_history}
        )
        return [Release.from_dict(item) for item in data.get("releases", [])]

    async def release_exists(self, release_name: str) -> bool:
        try:
            await self.release_history(release_name, max_history=1)
            return True
        except ReleaseNotFoundError:
            return False

    async def install_release(
        self,
        release_name: str,
        namespace: str,
        chart: bytes,
        values: Dict[str, Any]
    ) -> Release:
        data = await self._request(
            "POST",
            "/api/v1/releases",
            json={
                "name": release_name,
                "namespace": namespace,
                "chart": base64.b64encode(chart).decode(),
                "values": values,
            }
        )
        return Release.from_dict(data["release"])

    async def upgrade_release(
        self,
        release_name: str,
        chart: bytes,
        values: Dict[str, Any]
    ) -> Release:
        data = await self._request(
            "PUT",
            f"/api/v1/releases/{release_name}",
            release_name=release_name,
            json={
                "chart": base64.b64encode(chart).decode(),
                "values": values,
            }
        )
        return Release.from_dict(data["release"])

    async def install_chart_by_path(
        self,
        release_name: str,
        namespace: str,
        chart_path: str,
        values: Dict[str, Any]
    ) -> Release:
        """
        Install the chart at `chart_path`, or upgrade the release if it exists.

        Returns:
            The release with the revision assigned by the backend
        """
        chart = package_chart(chart_path)

        if await self.release_exists(release_name):
            logger.debug(f"[CHART] Upgrading release {release_name}")
            return await self.upgrade_release(release_name, chart, values)

        logger.debug(f"[CHART] Installing release {namespace}/{release_name}")
        return await self.install_release(release_name, namespace, chart, values)

    async def delete_release(self, release_name: str, purge: bool = False) -> None:
        await self._request(
            "DELETE",
            f"/api/v1/releases/{release_name}",
            release_name=release_name,
            params={"purge": str(purge).lower()}
        )
