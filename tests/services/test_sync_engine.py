"""
Tests for the upload sync engine.

The exec stream into the container is replaced by a recorder, so these
tests cover exclusion, change detection and the commands sent to the pod.
"""

import io
import os
import tarfile

import pytest
from unittest.mock import Mock

from devspace.schemas import BandwidthLimits, SyncConfig
from devspace.services.sync_engine import (
    SyncEngine,
    SyncSession,
    build_tar,
    diff_snapshots,
    is_excluded,
    take_snapshot,
)


class ExecRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, command, payload=None):
        self.calls.append((command, payload))

    def uploaded(self, index=-1):
        _, payload = self.calls[index]
        with tarfile.open(fileobj=io.BytesIO(payload), mode="r") as tar:
            return sorted(tar.getnames())


@pytest.fixture
def source(tmp_path):
    root = tmp_path / "src"
    (root / "node_modules" / "react").mkdir(parents=True)
    (root / "lib").mkdir()
    (root / "index.js").write_text("console.log(1)")
    (root / "lib" / "util.js").write_text("module.exports = {}")
    (root / "node_modules" / "react" / "index.js").write_text("react")
    (root / "debug.log").write_text("log")
    return root


def make_session(source, **kwargs) -> SyncSession:
    session = SyncSession(
        Mock(),
        Mock(),
        "default",
        local_path=str(source),
        container_path="/app",
        exclude_paths=["node_modules"],
        upload_exclude_paths=["*.log"],
        **kwargs
    )
    session._exec = ExecRecorder()
    return session


@pytest.mark.unit
class TestExcludes:

    def test_component_pattern_matches_at_any_depth(self):
        assert is_excluded("node_modules/react/index.js", ["node_modules"])
        assert is_excluded("packages/a/node_modules/x.js", ["node_modules"])
        assert not is_excluded("src/node_modules_backup.js", ["node_modules"])

    def test_glob_pattern(self):
        assert is_excluded("logs/app.log", ["*.log"])
        assert not is_excluded("logs/app.txt", ["*.log"])

    def test_rooted_pattern(self):
        assert is_excluded("build/out.js", ["/build"])
        assert not is_excluded("src/build/out.js", ["/build"])
        assert is_excluded("src/gen/a.py", ["src/gen"])
        assert not is_excluded("lib/src/gen/a.py", ["src/gen"])


@pytest.mark.unit
class TestSnapshots:

    def test_snapshot_skips_excluded(self, source):
        snapshot = take_snapshot(str(source), ["node_modules", "*.log"])
        assert sorted(snapshot) == ["index.js", "lib/util.js"]

    def test_diff(self):
        old = {"a": (1, 1), "b": (1, 1), "c": (1, 1)}
        new = {"a": (1, 1), "b": (2, 1), "d": (1, 1)}

        changed, removed = diff_snapshots(old, new)

        assert changed == ["b", "d"]
        assert removed == ["c"]

    def test_build_tar_skips_vanished_files(self, source):
        data = build_tar(str(source), ["index.js", "gone.js"])
        with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
            assert tar.getnames() == ["index.js"]


@pytest.mark.unit
class TestSyncSession:

    @pytest.mark.asyncio
    async def test_initial_upload(self, source):
        session = make_session(source, poll_interval=60)

        await session.start()
        await session.stop()

        command, _ = session._exec.calls[0]
        assert command == ["sh", "-c", "mkdir -p /app && tar xf - -C /app"]
        assert session._exec.uploaded(0) == ["index.js", "lib/util.js"]

    @pytest.mark.asyncio
    async def test_changes_and_deletions_are_pushed(self, source):
        session = make_session(source, poll_interval=60)
        await session.start()

        (source / "lib" / "new.js").write_text("new")
        os.remove(source / "index.js")
        changed, removed = await session.sync_once()
        await session.stop()

        assert changed == ["lib/new.js"]
        assert removed == ["index.js"]
        assert session._exec.uploaded(1) == ["lib/new.js"]
        assert session._exec.calls[2][0] == ["sh", "-c", "rm -rf /app/index.js"]

    @pytest.mark.asyncio
    async def test_no_changes_no_exec(self, source):
        session = make_session(source, poll_interval=60)
        await session.start()

        assert await session.sync_once() == ([], [])
        await session.stop()

        assert len(session._exec.calls) == 1

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, source):
        session = make_session(source, poll_interval=60)
        await session.start()
        assert session.running

        await session.stop()
        await session.stop()

        assert not session.running

    @pytest.mark.asyncio
    async def test_missing_local_path(self, tmp_path):
        session = make_session(tmp_path / "missing")
        with pytest.raises(FileNotFoundError):
            await session.start()


@pytest.mark.unit
class TestThrottle:

    def test_unlimited_writes_once(self, source):
        session = make_session(source)
        resp = Mock()

        session._write_throttled(resp, b"x" * 100000)

        resp.write_stdin.assert_called_once()

    def test_limited_writes_in_chunks(self, source):
        session = make_session(source, bandwidth_limits=BandwidthLimits(upload=100000))
        resp = Mock()

        session._write_throttled(resp, b"x" * 40000)

        assert resp.write_stdin.call_count == 3


@pytest.mark.unit
class TestSyncEngine:

    @pytest.mark.asyncio
    async def test_start_resolves_local_path(self, tmp_path, pod_factory, monkeypatch):
        (tmp_path / "app").mkdir()
        (tmp_path / "app" / "main.py").write_text("print(1)")
        uploads = []
        monkeypatch.setattr(SyncSession, "_exec", lambda self, command, payload=None: uploads.append(command))

        engine = SyncEngine(Mock(), poll_interval=60)
        declaration = SyncConfig(local_sub_path="./app", container_path="/srv", exclude_paths=["*.pyc"])
        session = await engine.start(pod_factory(), "default", declaration, workdir=str(tmp_path))
        await session.stop()

        assert session.local_path == os.path.normpath(str(tmp_path / "app"))
        assert session.container_path == "/srv"
        assert session.exclude_paths == ["*.pyc"]
        assert uploads == [["sh", "-c", "mkdir -p /srv && tar xf - -C /srv"]]
