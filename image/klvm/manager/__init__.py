# ---------------------------------------------------------------------------- #

from __future__ import annotations

from asyncio import Task, create_task
from collections.abc import Callable
from pathlib import Path
from typing import Any, Optional

import kopf
from kubernetes_asyncio.client import ApiClient  # type: ignore

from klvm.manager.controller import Controller
from klvm.manager.lvm import LVManager
from klvm.shared.util import log

# ---------------------------------------------------------------------------- #


def run(
    *,
    node_name: str,
    base_dir: Path,
    domain_name: str,
    volume_group: str,
    fs_type: str,
    workers: int,
) -> None:
    def create_controller() -> Controller:
        return Controller(
            api_client=ApiClient(),
            lvm=LVManager(base_dir=base_dir),
            node_name=node_name,
            domain_name=domain_name,
            volume_group=volume_group,
            default_fs_type=fs_type,
            workers=workers,
        )

    # define handlers

    registry = kopf.OperatorRegistry()

    _define_operator_handlers(registry, create_controller)

    # run kopf

    kopf.configure()
    kopf.run(registry=registry, standalone=True, clusterwide=True)


# ---------------------------------------------------------------------------- #
# Operator lifecycle


def _define_operator_handlers(
    registry: kopf.OperatorRegistry,
    create_controller: Callable[[], Controller],
) -> None:

    controller: Optional[Controller] = None
    controller_task: Optional[Task[None]] = None

    @kopf.on.login(registry=registry)
    async def on_login(**kwargs: Any) -> Optional[kopf.ConnectionInfo]:
        return kopf.login_via_client(**kwargs)

    @kopf.on.startup(registry=registry)
    async def on_startup(
        settings: kopf.OperatorSettings, logger: kopf.Logger, **_: object
    ) -> None:

        nonlocal controller, controller_task

        # don't create events

        settings.posting.enabled = False

        # the API client must be created within the operator's event loop

        controller = create_controller()

        # scan LVM and publish capacity before handling any PVC; failing here
        # prevents the operator from starting

        controller.lvm.refresh()

        log(f"LVM: {dict(controller.lvm.volume_groups)}")

        await controller.update_node_status(controller.lvm.volume_groups)

        # launch task that watches and reconciles PVCs

        controller_task = create_task(controller.run())

    @kopf.on.cleanup(registry=registry)
    async def on_cleanup(logger: kopf.Logger, **_: object) -> None:

        if controller is None:
            return

        # in-flight syncs are allowed to finish

        controller.stop()

        if controller_task is not None:
            await controller_task

        await controller.api_client.close()


# ---------------------------------------------------------------------------- #
