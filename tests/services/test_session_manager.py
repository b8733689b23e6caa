"""
Unit tests for the session manager.

Tests:
- Selector resolution picks the matching pod; zero matches skip
- Missing containers skip one declaration while the others proceed
- Sync start failure policy (abort / isolate)
- Port-forward readiness timeout only warns
- StopAll stops every sync session exactly once
"""

import asyncio
import logging

import pytest
from unittest.mock import AsyncMock, Mock

from devspace.errors import SessionStartError
from devspace.schemas import PortForwardingConfig, SyncConfig
from devspace.services.session_manager import (
    SessionFailurePolicy,
    SessionManager,
    SyncSessionHandle,
)


def make_kube(pods_by_selector):
    """Kube mock resolving label selectors from a {selector: pod} map."""
    kube = Mock()

    async def get_first_running_pod(label_selector, namespace):
        return pods_by_selector.get(label_selector)

    kube.get_first_running_pod = AsyncMock(side_effect=get_first_running_pod)
    return kube


def make_sync_engine(fail_for=()):
    engine = Mock()
    engine.sessions = []

    async def start(pod, container, declaration, verbose=False, workdir="."):
        if declaration.container_path in fail_for:
            raise RuntimeError("tar not found in container")
        session = Mock()
        session.stop = AsyncMock()
        engine.sessions.append(session)
        return session

    engine.start = AsyncMock(side_effect=start)
    return engine


class FakeForwarder:
    """Port forwarder stand-in; becomes ready only if told to."""

    def __init__(self, kube, pod_name, namespace, ports, become_ready=True, fail=False, fail_on_stop=False):
        self.pod_name = pod_name
        self.namespace = namespace
        self.ports = ports
        self.ready = asyncio.Event()
        self.stop_event = asyncio.Event()
        self.become_ready = become_ready
        self.fail = fail
        self.fail_on_stop = fail_on_stop

    async def run(self):
        if self.fail:
            raise OSError("address already in use")
        if self.become_ready:
            self.ready.set()
        await self.stop_event.wait()
        if self.fail_on_stop:
            raise OSError("connection reset by peer")

    def stop(self):
        self.stop_event.set()


def sync(selector, container_path="/app", container_name=None, namespace=None):
    return SyncConfig(
        label_selector=selector,
        container_path=container_path,
        container_name=container_name,
        namespace=namespace,
    )


@pytest.mark.unit
class TestSyncSessions:

    @pytest.mark.asyncio
    async def test_resolves_matching_pod(self, pod_factory):
        web = pod_factory(name="web-0", namespace="dev", labels={"app": "web"})
        db = pod_factory(name="db-0", namespace="dev", labels={"app": "db"})
        kube = make_kube({"app=web": web, "app=db": db})
        manager = SessionManager(kube, "dev", sync_engine=make_sync_engine())

        handle = await manager.start_sync(sync({"app": "web"}))

        assert handle.pod is web
        assert handle.container == "default"
        kube.get_first_running_pod.assert_awaited_once_with("app=web", "dev")

    @pytest.mark.asyncio
    async def test_explicit_namespace_overrides_release_namespace(self, pod_factory):
        kube = make_kube({"app=web": pod_factory(namespace="other")})
        manager = SessionManager(kube, "dev", sync_engine=make_sync_engine())

        await manager.start_sync(sync({"app": "web"}, namespace="other"))

        kube.get_first_running_pod.assert_awaited_once_with("app=web", "other")

    @pytest.mark.asyncio
    async def test_no_matching_pod_is_skipped(self, caplog):
        engine = make_sync_engine()
        manager = SessionManager(make_kube({}), "dev", sync_engine=engine)

        with caplog.at_level(logging.WARNING):
            handle = await manager.start_sync(sync({"app": "missing"}))

        assert handle is None
        engine.start.assert_not_awaited()
        assert "No running pod matches app=missing" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_container_skips_only_that_declaration(self, pod_factory, caplog):
        pod = pod_factory(containers=["app", "sidecar"])
        engine = make_sync_engine()
        manager = SessionManager(make_kube({"app=web": pod}), "dev", sync_engine=engine)

        with caplog.at_level(logging.WARNING):
            handles = await manager.start_syncs([
                sync({"app": "web"}, container_path="/a", container_name="db"),
                sync({"app": "web"}, container_path="/b", container_name="sidecar"),
                sync({"app": "web"}, container_path="/c"),
            ])

        assert sorted(h.container for h in handles) == ["app", "sidecar"]
        assert engine.start.await_count == 2
        assert "Container db not found" in caplog.text

    @pytest.mark.asyncio
    async def test_start_failure_aborts_by_default(self, pod_factory):
        engine = make_sync_engine(fail_for={"/broken"})
        manager = SessionManager(make_kube({"app=web": pod_factory()}), "dev", sync_engine=engine)

        with pytest.raises(SessionStartError):
            await manager.start_syncs([
                sync({"app": "web"}, container_path="/ok"),
                sync({"app": "web"}, container_path="/broken"),
            ])

        # The session that did start was stopped again
        assert len(engine.sessions) == 1
        engine.sessions[0].stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_failure_isolated(self, pod_factory, caplog):
        engine = make_sync_engine(fail_for={"/broken"})
        manager = SessionManager(
            make_kube({"app=web": pod_factory()}),
            "dev",
            sync_engine=engine,
            failure_policy=SessionFailurePolicy.ISOLATE,
        )

        with caplog.at_level(logging.WARNING):
            handles = await manager.start_syncs([
                sync({"app": "web"}, container_path="/ok"),
                sync({"app": "web"}, container_path="/broken"),
            ])

        assert len(handles) == 1
        assert "1 of 2 sync session(s) failed to start" in caplog.text

    @pytest.mark.asyncio
    async def test_empty_selector_is_skipped(self):
        engine = make_sync_engine()
        kube = make_kube({})
        manager = SessionManager(kube, "dev", sync_engine=engine)

        assert await manager.start_sync(sync({})) is None
        kube.get_first_running_pod.assert_not_awaited()


@pytest.mark.unit
class TestForwardSessions:

    @pytest.mark.asyncio
    async def test_forward_becomes_ready(self, pod_factory):
        pod = pod_factory(name="web-0", namespace="dev")
        manager = SessionManager(make_kube({"app=web": pod}), "dev", forwarder_factory=FakeForwarder)
        declaration = PortForwardingConfig.model_validate({
            "labelSelector": {"app": "web"},
            "portMappings": [{"localPort": 8080, "remotePort": 80}, {"localPort": 3000, "remotePort": 3000}],
        })

        handle = await manager.start_forward(declaration)

        assert handle.ready
        assert handle.port_pairs == ["8080:80", "3000:3000"]
        assert handle.forwarder.pod_name == "web-0"

        await manager.stop_all([], [handle])
        await asyncio.wait_for(handle.task, timeout=1)

    @pytest.mark.asyncio
    async def test_readiness_timeout_only_warns(self, pod_factory, caplog):
        manager = SessionManager(
            make_kube({"app=web": pod_factory()}),
            "dev",
            forwarder_factory=lambda *args: FakeForwarder(*args, become_ready=False),
            ready_timeout=0.05,
        )
        declaration = PortForwardingConfig(label_selector={"app": "web"})

        with caplog.at_level(logging.WARNING):
            handle = await manager.start_forward(declaration)

        assert handle is not None
        assert not handle.ready
        assert not handle.task.done()
        assert "not ready after" in caplog.text

        handle.stop()
        await asyncio.wait_for(handle.task, timeout=1)

    @pytest.mark.asyncio
    async def test_forwarder_failure_returns_none(self, pod_factory, caplog):
        manager = SessionManager(
            make_kube({"app=web": pod_factory()}),
            "dev",
            forwarder_factory=lambda *args: FakeForwarder(*args, fail=True),
        )

        with caplog.at_level(logging.ERROR):
            handle = await manager.start_forward(PortForwardingConfig(label_selector={"app": "web"}))
            await asyncio.sleep(0)

        assert handle is None
        assert "[PORTFORWARD]" in caplog.text
        assert "address already in use" in caplog.text

    @pytest.mark.asyncio
    async def test_late_forwarder_failure_is_logged(self, pod_factory, caplog):
        manager = SessionManager(
            make_kube({"app=web": pod_factory()}),
            "dev",
            forwarder_factory=lambda *args: FakeForwarder(*args, fail_on_stop=True),
        )

        with caplog.at_level(logging.ERROR):
            handle = await manager.start_forward(PortForwardingConfig(label_selector={"app": "web"}))
            assert handle.ready

            handle.stop()
            await asyncio.wait({handle.task}, timeout=1)
            await asyncio.sleep(0)

        assert handle.task.done()
        assert "[PORTFORWARD]" in caplog.text
        assert "connection reset by peer" in caplog.text

    @pytest.mark.asyncio
    async def test_unsupported_resource_type_is_skipped(self):
        kube = make_kube({})
        manager = SessionManager(kube, "dev", forwarder_factory=FakeForwarder)

        handle = await manager.start_forward(
            PortForwardingConfig(label_selector={"app": "web"}, resource_type="service")
        )

        assert handle is None
        kube.get_first_running_pod.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unresolved_forwards_are_dropped(self, pod_factory):
        manager = SessionManager(
            make_kube({"app=web": pod_factory()}),
            "dev",
            forwarder_factory=FakeForwarder,
        )

        handles = await manager.start_forwards([
            PortForwardingConfig(label_selector={"app": "web"}),
            PortForwardingConfig(label_selector={"app": "gone"}),
        ])

        assert len(handles) == 1
        await manager.stop_all([], handles)


@pytest.mark.unit
class TestStopAll:

    @pytest.mark.asyncio
    async def test_every_sync_stopped_once_despite_failures(self, pod_factory):
        pod = pod_factory()
        sessions = [Mock(stop=AsyncMock()) for _ in range(3)]
        sessions[1].stop.side_effect = RuntimeError("exec stream closed")
        handles = [SyncSessionHandle(pod=pod, container="default", session=s) for s in sessions]
        manager = SessionManager(Mock(), "dev", sync_engine=Mock())

        await manager.stop_all(handles, [])
        await manager.stop_all(handles, [])

        for session in sessions:
            session.stop.assert_awaited_once()
        assert all(handle.stopped for handle in handles)
