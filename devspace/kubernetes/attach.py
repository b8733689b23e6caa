"""
Interactive terminal into a pod.

Runs an exec stream with a TTY and bridges it to the local terminal until
the remote shell exits. The blocking stream loop runs in a worker thread.
"""

import asyncio
import logging
import os
import select
import sys
from typing import List, Optional

from kubernetes import client
from kubernetes.stream import stream

from .helpers import get_container_names

logger = logging.getLogger(__name__)

DEFAULT_SHELL = ["sh", "-c", "command -v bash >/dev/null 2>&1 && exec bash || exec sh"]


def select_container(pod: client.V1Pod, container_name: Optional[str] = None) -> str:
    """
    Pick the container to attach to.

    Raises:
        ValueError: If the pod has no containers or the named one is absent
    """
    names = get_container_names(pod)
    if not names:
        raise ValueError(f"Pod {pod.metadata.namespace}/{pod.metadata.name} has no containers")
    if not container_name:
        return names[0]
    if container_name not in names:
        raise ValueError(
            f"Container {container_name} not found in pod {pod.metadata.namespace}/{pod.metadata.name}"
        )
    return container_name


def _exit_code(resp) -> int:
    code = resp.returncode
    return 0 if code is None else int(code)


def _attach_blocking(stream_client: client.CoreV1Api, pod: client.V1Pod, container: str, command: List[str]) -> int:
    resp = stream(
        stream_client.connect_get_namespaced_pod_exec,
        pod.metadata.name,
        pod.metadata.namespace,
        container=container,
        command=command,
        stderr=True,
        stdin=True,
        stdout=True,
        tty=True,
        _preload_content=False
    )

    stdin_fd = sys.stdin.fileno()
    interactive = os.isatty(stdin_fd)
    saved_attrs = None

    if interactive:
        import termios
        import tty

        saved_attrs = termios.tcgetattr(stdin_fd)
        tty.setraw(stdin_fd)

    try:
        while resp.is_open():
            resp.update(timeout=0.1)
            if resp.peek_stdout():
                sys.stdout.write(resp.read_stdout())
                sys.stdout.flush()
            if resp.peek_stderr():
                sys.stderr.write(resp.read_stderr())
                sys.stderr.flush()

            readable, _, _ = select.select([stdin_fd], [], [], 0)
            if readable:
                data = os.read(stdin_fd, 1024)
                if not data:
                    break
                resp.write_stdin(data.decode("utf-8", errors="replace"))
    finally:
        if saved_attrs is not None:
            import termios

            termios.tcsetattr(stdin_fd, termios.TCSADRAIN, saved_attrs)
        resp.close()

    return _exit_code(resp)


async def enter_terminal(
    kube,
    pod: client.V1Pod,
    container_name: Optional[str] = None,
    args: Optional[List[str]] = None
) -> int:
    """
    Attach the local terminal to a shell (or `args`) in the pod.

    Returns:
        Exit code of the remote command
    """
    container = select_container(pod, container_name)
    command = list(args) if args else DEFAULT_SHELL

    logger.info(f"[ATTACH] Entering {pod.metadata.namespace}/{pod.metadata.name} ({container})")
    return await asyncio.to_thread(
        _attach_blocking,
        kube.get_stream_client(),
        pod,
        container,
        command
    )
