"""
Upload-direction file synchronization into a container.

A SyncSession uploads the local tree once through an exec'd `tar xf -`,
then polls the tree and uploads changed files and removes deleted ones until
it is stopped. Exclude patterns follow a subset of .gitignore rules: a
pattern containing "/" is matched from the sync root, anything else matches
a single path component at any depth, and an excluded directory excludes
everything below it.
"""

import asyncio
import fnmatch
import io
import logging
import os
import shlex
import tarfile
import time
from typing import Dict, Iterable, List, Optional, Tuple

from kubernetes import client
from kubernetes.stream import stream

from ..schemas import BandwidthLimits, SyncConfig

logger = logging.getLogger(__name__)

Snapshot = Dict[str, Tuple[int, int]]

_WRITE_CHUNK = 16 * 1024


def is_excluded(rel_path: str, patterns: Iterable[str]) -> bool:
    """
    Check a sync-root relative posix path against exclude patterns.

    Examples:
        >>> is_excluded("node_modules/react/index.js", ["node_modules"])
        True
        >>> is_excluded("src/app.log", ["/app.log"])
        False
    """
    parts = rel_path.split("/")
    for raw in patterns:
        pattern = raw.strip()
        if not pattern:
            continue
        rooted = "/" in pattern.rstrip("/")
        pattern = pattern.strip("/")

        for depth in range(1, len(parts) + 1):
            if rooted:
                if fnmatch.fnmatchcase("/".join(parts[:depth]), pattern):
                    return True
            elif fnmatch.fnmatchcase(parts[depth - 1], pattern):
                return True
    return False


def take_snapshot(local_path: str, excludes: List[str]) -> Snapshot:
    """Map every non-excluded file below local_path to (mtime_ns, size)."""
    snapshot: Snapshot = {}
    for root, dirs, files in os.walk(local_path):
        rel_root = os.path.relpath(root, local_path).replace(os.sep, "/")
        rel_root = "" if rel_root == "." else rel_root + "/"

        dirs[:] = [d for d in dirs if not is_excluded(rel_root + d, excludes)]
        for file_name in files:
            rel_path = rel_root + file_name
            if is_excluded(rel_path, excludes):
                continue
            try:
                stat = os.stat(os.path.join(root, file_name))
            except FileNotFoundError:
                continue
            snapshot[rel_path] = (stat.st_mtime_ns, stat.st_size)
    return snapshot


def diff_snapshots(old: Snapshot, new: Snapshot) -> Tuple[List[str], List[str]]:
    """Return (changed_or_added, removed) paths between two snapshots."""
    changed = sorted(path for path, meta in new.items() if old.get(path) != meta)
    removed = sorted(path for path in old if path not in new)
    return changed, removed


def build_tar(local_path: str, rel_paths: Iterable[str]) -> bytes:
    tar_stream = io.BytesIO()
    with tarfile.open(fileobj=tar_stream, mode='w') as tar:
        for rel_path in rel_paths:
            full_path = os.path.join(local_path, *rel_path.split("/"))
            # Files can vanish between snapshot and upload
            if os.path.isfile(full_path):
                tar.add(full_path, arcname=rel_path, recursive=False)
    return tar_stream.getvalue()


class SyncSession:
    """One running local -> container synchronization."""

    def __init__(
        self,
        kube,
        pod: client.V1Pod,
        container: str,
        local_path: str,
        container_path: str,
        exclude_paths: Optional[List[str]] = None,
        upload_exclude_paths: Optional[List[str]] = None,
        bandwidth_limits: Optional[BandwidthLimits] = None,
        verbose: bool = False,
        poll_interval: float = 1.0,
    ):
        self.kube = kube
        self.pod = pod
        self.container = container
        self.local_path = local_path
        self.container_path = container_path
        self.exclude_paths = list(exclude_paths or [])
        self.upload_exclude_paths = list(upload_exclude_paths or [])
        self.bandwidth_limits = bandwidth_limits
        self.verbose = verbose
        self.poll_interval = poll_interval

        self._snapshot: Snapshot = {}
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def excludes(self) -> List[str]:
        return self.exclude_paths + self.upload_exclude_paths

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def target(self) -> str:
        return f"{self.pod.metadata.namespace}/{self.pod.metadata.name}:{self.container_path}"

    # =========================================================================
    # EXEC HELPERS (blocking, run via asyncio.to_thread)
    # =========================================================================

    def _exec(self, command: List[str], payload: Optional[bytes] = None) -> None:
        stream_client = self.kube.get_stream_client()
        resp = stream(
            stream_client.connect_get_namespaced_pod_exec,
            self.pod.metadata.name,
            self.pod.metadata.namespace,
            container=self.container,
            command=command,
            stderr=True,
            stdin=payload is not None,
            stdout=True,
            tty=False,
            _preload_content=False
        )
        try:
            if payload is not None:
                self._write_throttled(resp, payload)
            resp.update(timeout=1)
            if resp.peek_stderr():
                logger.warning(f"[SYNC] {self.target}: {resp.read_stderr().strip()}")
        finally:
            resp.close()

    def _write_throttled(self, resp, payload: bytes) -> None:
        limit_kb = self.bandwidth_limits.upload if self.bandwidth_limits else None
        if not limit_kb:
            resp.write_stdin(payload)
            return

        bytes_per_second = limit_kb * 1024
        started = time.monotonic()
        sent = 0
        for offset in range(0, len(payload), _WRITE_CHUNK):
            chunk = payload[offset:offset + _WRITE_CHUNK]
            resp.write_stdin(chunk)
            sent += len(chunk)
            ahead = sent / bytes_per_second - (time.monotonic() - started)
            if ahead > 0:
                time.sleep(ahead)

    def _upload(self, rel_paths: List[str]) -> None:
        tar_data = build_tar(self.local_path, rel_paths)
        target = shlex.quote(self.container_path)
        self._exec(["sh", "-c", f"mkdir -p {target} && tar xf - -C {target}"], tar_data)
        if self.verbose:
            for rel_path in rel_paths:
                logger.info(f"[SYNC] Uploaded {rel_path}")
        logger.debug(f"[SYNC] Uploaded {len(rel_paths)} file(s) ({len(tar_data)} bytes) to {self.target}")

    def _remove(self, rel_paths: List[str]) -> None:
        targets = " ".join(
            shlex.quote(f"{self.container_path.rstrip('/')}/{rel_path}") for rel_path in rel_paths
        )
        self._exec(["sh", "-c", f"rm -rf {targets}"])
        if self.verbose:
            for rel_path in rel_paths:
                logger.info(f"[SYNC] Removed {rel_path}")

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Upload the initial tree and start watching for changes."""
        if not os.path.isdir(self.local_path):
            raise FileNotFoundError(f"Local sync path does not exist: {self.local_path}")

        self._snapshot = await asyncio.to_thread(take_snapshot, self.local_path, self.excludes)
        logger.info(f"[SYNC] Initial upload of {len(self._snapshot)} file(s) to {self.target}")
        if self._snapshot:
            await asyncio.to_thread(self._upload, sorted(self._snapshot))

        self._task = asyncio.create_task(self._watch())
        logger.info(f"[SYNC] ✅ Sync started {self.local_path} -> {self.target}")

    async def sync_once(self) -> Tuple[List[str], List[str]]:
        """Push changes since the last snapshot. Returns (changed, removed)."""
        snapshot = await asyncio.to_thread(take_snapshot, self.local_path, self.excludes)
        changed, removed = diff_snapshots(self._snapshot, snapshot)
        if changed:
            await asyncio.to_thread(self._upload, changed)
        if removed:
            await asyncio.to_thread(self._remove, removed)
        self._snapshot = snapshot
        return changed, removed

    async def _watch(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.sync_once()
            except Exception as e:
                # Transient exec failures are retried on the next tick
                logger.warning(f"[SYNC] Sync to {self.target} failed: {e}")

    async def stop(self) -> None:
        """Stop watching. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info(f"[SYNC] Sync stopped for {self.target}")


class SyncEngine:
    """Creates and starts sync sessions."""

    def __init__(self, kube, poll_interval: float = 1.0):
        self.kube = kube
        self.poll_interval = poll_interval

    async def start(
        self,
        pod: client.V1Pod,
        container: str,
        sync_config: SyncConfig,
        verbose: bool = False,
        workdir: str = "."
    ) -> SyncSession:
        """
        Start synchronizing one sync declaration into a container.

        Args:
            pod: Target pod
            container: Container name within the pod
            sync_config: Sync declaration (paths, excludes, bandwidth limits)
            verbose: Log every synchronized file
            workdir: Directory local_sub_path is relative to

        Returns:
            The running SyncSession
        """
        session = SyncSession(
            self.kube,
            pod,
            container,
            local_path=os.path.normpath(os.path.join(workdir, sync_config.local_sub_path or ".")),
            container_path=sync_config.container_path,
            exclude_paths=sync_config.exclude_paths,
            upload_exclude_paths=sync_config.upload_exclude_paths,
            bandwidth_limits=sync_config.bandwidth_limits,
            verbose=verbose,
            poll_interval=self.poll_interval
        )
        await session.start()
        return session
