"""
Command line entry point.

    devspace up [--tiller] [--no-init-registries] [-d] [--no-sync] [--verbose-sync]
                [--no-portforwarding] [--no-sleep] [-c CONTAINER] [-- CMD ...]
    devspace remove sync [--selector k=v,...] [--local PATH] [--container PATH] [--all]
    devspace remove port [PORTS] [--selector k=v,...] [--all]
    devspace remove package [NAME] [--all] [-d DEPLOYMENT]
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from . import __version__
from .config import get_settings
from .errors import DevSpaceError
from .services.config_store import ConfigStore
from .services.orchestrator import UpOptions, UpWorkflow
from .services.remove import remove_package, remove_port, remove_sync

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # The kubernetes client logs every request at DEBUG
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="devspace", description="Develop inside a Kubernetes cluster")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # up
    up = subparsers.add_parser("up", help="Starts your DevSpace")
    up.add_argument("--tiller", action=argparse.BooleanOptionalAction, default=False,
                    help="Upgrade the chart backend even if it is already deployed")
    up.add_argument("--init-registries", action=argparse.BooleanOptionalAction, default=True,
                    help="Create image pull secrets for registries with credentials")
    up.add_argument("-d", "--deploy", action="store_true", help="Force chart deployment")
    up.add_argument("--sync", action=argparse.BooleanOptionalAction, default=True,
                    help="Enable code synchronization")
    up.add_argument("--verbose-sync", action="store_true", help="Log every synchronized file")
    up.add_argument("--portforwarding", action=argparse.BooleanOptionalAction, default=True,
                    help="Enable port forwarding")
    up.add_argument("--no-sleep", action="store_true",
                    help="Override the containers' command and args with empty values")
    up.add_argument("-c", "--container", help="Container name where to open the shell")
    up.add_argument("args", nargs=argparse.REMAINDER, help="Command to run instead of a shell")

    # remove
    remove = subparsers.add_parser("remove", help="Changes devspace configuration")
    remove_subparsers = remove.add_subparsers(dest="target", required=True)

    sync = remove_subparsers.add_parser("sync", help="Remove sync paths from the devspace")
    sync.add_argument("--selector", help="Comma separated key=value selector list (e.g. release=test)")
    sync.add_argument("--local", help="Relative local path to remove")
    sync.add_argument("--container", help="Absolute container path to remove")
    sync.add_argument("--all", action="store_true", help="Remove all configured sync paths")

    port = remove_subparsers.add_parser("port", help="Remove forwarded ports from the devspace")
    port.add_argument("ports", nargs="?", help="Comma separated ports (e.g. 8080,3000)")
    port.add_argument("--selector", help="Comma separated key=value selector list (e.g. release=test)")
    port.add_argument("--all", action="store_true", help="Remove all configured ports")

    package = remove_subparsers.add_parser("package", help="Remove a package from the devspace chart")
    package.add_argument("package", nargs="?", help="Package name")
    package.add_argument("--all", action="store_true", help="Remove all packages")
    package.add_argument("-d", "--deployment", help="The deployment name to use")

    return parser


async def run_up(args: argparse.Namespace, store: ConfigStore) -> int:
    config = store.load()
    attach_args = args.args[1:] if args.args[:1] == ["--"] else args.args
    options = UpOptions(
        force_backend_upgrade=args.tiller,
        init_registries=args.init_registries,
        force_deploy=args.deploy,
        sync=args.sync,
        verbose_sync=args.verbose_sync,
        portforwarding=args.portforwarding,
        no_sleep=args.no_sleep,
        container=args.container,
        attach_args=attach_args,
    )
    workflow = UpWorkflow(config, workdir=store.workdir, settings=store.settings)
    return await workflow.run(options)


async def run_remove(args: argparse.Namespace, store: ConfigStore) -> int:
    if args.target == "sync":
        remove_sync(store, selector=args.selector, local_path=args.local,
                    container_path=args.container, remove_all=args.all)
    elif args.target == "port":
        remove_port(store, ports=args.ports, selector=args.selector, remove_all=args.all)
    else:
        await remove_package(store, package=args.package, deployment=args.deployment, remove_all=args.all)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level)
    store = ConfigStore(os.getcwd(), settings)

    try:
        if args.command == "up":
            return asyncio.run(run_up(args, store))
        return asyncio.run(run_remove(args, store))
    except DevSpaceError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
