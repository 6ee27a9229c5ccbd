# ---------------------------------------------------------------------------- #

from __future__ import annotations

import asyncio
import os
from argparse import ArgumentParser, Namespace
from pathlib import Path

from kubernetes_asyncio.config import (  # type: ignore
    load_incluster_config,
    load_kube_config,
)

import klvm.manager
import klvm.scheduler
from klvm.shared.config import (
    DEFAULT_BASE_DIR,
    DEFAULT_DOMAIN_NAME,
    DEFAULT_FS_TYPE,
    DEFAULT_PORT,
    DEFAULT_STORAGE_CLASS,
    DEFAULT_VOLUME_GROUP,
    DEFAULT_WORKERS,
    NODE_NAME_ENV_VAR,
)

# ---------------------------------------------------------------------------- #


def main() -> None:
    """
    Usage:

        python -m klvm manager [--node-name <node_name>] [options]
        python -m klvm scheduler [options]
    """

    args = _parse_args()

    if args.kubeconfig is None:
        load_incluster_config()
    else:
        asyncio.run(load_kube_config(config_file=args.kubeconfig))

    if args.mode == "manager":

        if not args.node_name:
            raise SystemExit(
                f"Node name not given and {NODE_NAME_ENV_VAR} environment"
                f" variable not set"
            )

        klvm.manager.run(
            node_name=args.node_name,
            base_dir=args.base_dir,
            domain_name=args.domain_name,
            volume_group=args.volume_group,
            fs_type=args.fs_type,
            workers=args.workers,
        )

    elif args.mode == "scheduler":

        klvm.scheduler.run(
            port=args.port,
            domain_name=args.domain_name,
            storage_class=args.storage_class,
        )


def _parse_args() -> Namespace:

    parser = ArgumentParser(prog="klvm")
    parser.add_argument(
        "--kubeconfig",
        help="Path to kubeconfig file, omit this if run in cluster",
    )
    parser.add_argument(
        "--domain-name",
        default=DEFAULT_DOMAIN_NAME,
        help="Domain name of the extended resources",
    )

    subparsers = parser.add_subparsers(dest="mode", required=True)

    # 'manager' subcommand

    manager_parser = subparsers.add_parser("manager")
    manager_parser.add_argument(
        "--node-name", default=os.environ.get(NODE_NAME_ENV_VAR)
    )
    manager_parser.add_argument(
        "--base-dir",
        type=Path,
        default=DEFAULT_BASE_DIR,
        help="Base directory for mount points",
    )
    manager_parser.add_argument(
        "--workers",
        type=int,
        default=DEFAULT_WORKERS,
        help="Number of workers for the controller",
    )
    manager_parser.add_argument(
        "--fs-type",
        default=DEFAULT_FS_TYPE,
        help="File system type for LVs whose PVC doesn't specify one",
    )
    manager_parser.add_argument(
        "--volume-group",
        default=DEFAULT_VOLUME_GROUP,
        help="VG whose free capacity is published on the node",
    )

    # 'scheduler' subcommand

    scheduler_parser = subparsers.add_parser("scheduler")
    scheduler_parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    scheduler_parser.add_argument(
        "--storage-class",
        default=DEFAULT_STORAGE_CLASS,
        help="Storage class handled by the scheduler extender",
    )

    # parse arguments

    return parser.parse_args()


# ---------------------------------------------------------------------------- #

if __name__ == "__main__":
    main()

# ---------------------------------------------------------------------------- #
