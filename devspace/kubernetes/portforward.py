"""
Port forwarding to pods over the Kubernetes API.

A PortForwarder listens on local TCP ports and, for every accepted
connection, opens a port-forward stream to the pod and pumps bytes in both
directions. It is used both for user-declared port mappings and for the
tunnel to the chart backend (local port 0 lets the OS pick a free port).
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from kubernetes.stream import portforward

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


def parse_port_pair(pair: str) -> Tuple[int, int]:
    """
    Parse "local:remote" (or a single "port" meaning both sides) into ints.

    Raises:
        ValueError: On malformed input
    """
    local, sep, remote = pair.partition(":")
    if not sep:
        remote = local
    return int(local), int(remote)


class PortForwarder:
    """
    Forwards one or more local ports to a pod.

    Lifecycle:
        start() binds all local listeners and sets `ready`;
        run() starts and then serves until stop() is called;
        stop() sets the stop signal, after which listeners close.
    """

    def __init__(
        self,
        kube,
        pod_name: str,
        namespace: str,
        ports: List[str],
        address: str = "127.0.0.1",
        ready: Optional[asyncio.Event] = None,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.kube = kube
        self.pod_name = pod_name
        self.namespace = namespace
        self.port_pairs = [parse_port_pair(p) for p in ports]
        self.address = address
        self.ready = ready or asyncio.Event()
        self.stop_event = stop_event or asyncio.Event()
        self.local_ports: List[int] = []
        self._servers: List[asyncio.AbstractServer] = []
        self._connections: set = set()

    @property
    def ports(self) -> List[str]:
        return [f"{local}:{remote}" for local, remote in self.port_pairs]

    async def start(self) -> None:
        """Bind every local port; on failure the already-bound ones are closed."""
        try:
            for local_port, remote_port in self.port_pairs:
                server = await asyncio.start_server(
                    lambda r, w, port=remote_port: self._handle_connection(r, w, port),
                    host=self.address,
                    port=local_port
                )
                self._servers.append(server)
                self.local_ports.append(server.sockets[0].getsockname()[1])
        except OSError:
            await self.close()
            raise

        logger.debug(
            f"[PORTFORWARD] Listening on {', '.join(map(str, self.local_ports))} "
            f"for pod {self.namespace}/{self.pod_name}"
        )
        self.ready.set()

    async def run(self) -> None:
        """Start forwarding and serve until the stop signal is set."""
        await self.start()
        try:
            await self.stop_event.wait()
        finally:
            await self.close()

    def stop(self) -> None:
        self.stop_event.set()

    async def close(self) -> None:
        for server in self._servers:
            server.close()

        # wait_closed() also waits for open connections, so end those first
        connections = list(self._connections)
        for task in connections:
            task.cancel()
        if connections:
            await asyncio.gather(*connections, return_exceptions=True)

        for server in self._servers:
            await server.wait_closed()
        self._servers.clear()

    # =========================================================================
    # CONNECTION HANDLING
    # =========================================================================

    def _open_stream(self, remote_port: int):
        stream_client = self.kube.get_stream_client()
        return portforward(
            stream_client.connect_get_namespaced_pod_portforward,
            self.pod_name,
            self.namespace,
            ports=str(remote_port)
        )

    async def _handle_connection(
        self,
        local_reader: asyncio.StreamReader,
        local_writer: asyncio.StreamWriter,
        remote_port: int
    ) -> None:
        task = asyncio.current_task()
        self._connections.add(task)
        pf = None
        remote_writer = None

        try:
            pf = await asyncio.to_thread(self._open_stream, remote_port)
            remote_socket = pf.socket(remote_port)
            remote_socket.setblocking(False)
            remote_reader, remote_writer = await asyncio.open_connection(sock=remote_socket)

            await asyncio.gather(
                self._pump(local_reader, remote_writer),
                self._pump(remote_reader, local_writer),
            )

            error = pf.error(remote_port)
            if error:
                logger.warning(f"[PORTFORWARD] Port {remote_port} on {self.pod_name}: {error}")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"[PORTFORWARD] Connection to {self.pod_name}:{remote_port} failed: {e}")
        finally:
            for writer in (remote_writer, local_writer):
                if writer is not None:
                    writer.close()
            if pf is not None:
                await asyncio.to_thread(pf.close)
            self._connections.discard(task)

    @staticmethod
    async def _pump(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                data = await reader.read(_CHUNK_SIZE)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except (ConnectionError, OSError):
            pass
        finally:
            if writer.can_write_eof():
                try:
                    writer.write_eof()
                except (ConnectionError, OSError):
                    pass


async def open_tunnel(
    kube,
    namespace: str,
    label_selector: str,
    remote_port: int
) -> PortForwarder:
    """
    Open a tunnel from an OS-chosen local port to a running pod.

    Raises:
        RuntimeError: If no running pod matches the selector
        OSError: If the local listener cannot be bound
    """
    pod = await kube.get_first_running_pod(label_selector, namespace)
    if pod is None:
        raise RuntimeError(f"No running pod matches {label_selector} in namespace {namespace}")

    tunnel = PortForwarder(kube, pod.metadata.name, namespace, [f"0:{remote_port}"])
    await tunnel.start()
    return tunnel
