# ---------------------------------------------------------------------------- #

from __future__ import annotations

from asyncio import Lock, create_task, gather, get_running_loop, sleep
from collections.abc import Mapping
from datetime import timedelta
from traceback import format_exc

from kubernetes_asyncio.client import (  # type: ignore
    ApiClient,
    ApiException,
    CoreV1Api,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
)

from klvm.manager.lvm import LVManager, VolumeGroup
from klvm.shared.annotations import ClaimAnnotations, VolumeAnnotations
from klvm.shared.config import (
    DELETE_RETRY_INTERVAL,
    DELETE_RETRY_TIMEOUT,
    RESYNC_PERIOD,
    WATCH_RETRY_DELAY,
)
from klvm.shared.errors import MissingAnnotationError, UnsupportedClaimError
from klvm.shared.kubernetes import (
    ObjectRef,
    atomically_modify_persistent_volume,
    atomically_modify_persistent_volume_claim,
    find_persistent_volume_for_claim,
    is_not_found,
    patch_node_status,
    watch_all_persistent_volume_claims,
)
from klvm.shared.util import log, log_error, split_key
from klvm.shared.workqueue import QueueShutDown, WorkQueue

# ---------------------------------------------------------------------------- #


class Controller:
    """
    Provisions logical volumes for PVCs that the scheduler extender assigned to
    this node, and removes them once their PVCs are deleted.

    All PVCs in the cluster are watched, and their keys are fed into a
    deduplicating queue that a fixed number of workers drain. Workers always
    re-read the PVC, as several events may have been coalesced into a single
    queue entry. Failed syncs are logged, and retried when the PVC next changes
    or when all PVCs are periodically queued again.
    """

    api_client: ApiClient
    lvm: LVManager
    node_name: str
    domain_name: str
    volume_group: str
    default_fs_type: str
    workers: int
    delete_retry_interval: timedelta
    delete_retry_timeout: timedelta
    resync_period: timedelta

    __queue: WorkQueue
    __lvm_lock: Lock

    def __init__(
        self,
        api_client: ApiClient,
        lvm: LVManager,
        *,
        node_name: str,
        domain_name: str,
        volume_group: str,
        default_fs_type: str,
        workers: int,
        delete_retry_interval: timedelta = DELETE_RETRY_INTERVAL,
        delete_retry_timeout: timedelta = DELETE_RETRY_TIMEOUT,
        resync_period: timedelta = RESYNC_PERIOD,
    ) -> None:

        self.api_client = api_client
        self.lvm = lvm
        self.node_name = node_name
        self.domain_name = domain_name
        self.volume_group = volume_group
        self.default_fs_type = default_fs_type
        self.workers = workers
        self.delete_retry_interval = delete_retry_interval
        self.delete_retry_timeout = delete_retry_timeout
        self.resync_period = resync_period

        self.__queue = WorkQueue()
        self.__lvm_lock = Lock()

    @property
    def queue(self) -> WorkQueue:
        return self.__queue

    # ------------------------------------------------------------------------ #
    # Lifecycle

    async def run(self) -> None:
        """Watch PVCs and process them until stop() is called. Returns once
        all in-flight syncs have finished."""

        log(f"Starting LVM controller on node {self.node_name}")

        producers = [
            create_task(self._watch_claims()),
            create_task(self._resync_claims()),
        ]

        try:
            await gather(*(self._work() for _ in range(self.workers)))
        finally:
            for producer in producers:
                producer.cancel()
            await gather(*producers, return_exceptions=True)

        log("LVM controller stopped")

    def stop(self) -> None:
        log("Shutting down LVM controller")
        self.__queue.shut_down()

    async def _watch_claims(self) -> None:
        async def callback(pvc: V1PersistentVolumeClaim, exists: bool) -> None:
            self.__queue.add(ObjectRef.of(pvc).key)

        while True:

            try:
                await watch_all_persistent_volume_claims(
                    api_client=self.api_client, callback=callback
                )
            except Exception:
                log_error(f"Error while watching PVCs:\n{format_exc()}")
                await sleep(WATCH_RETRY_DELAY.total_seconds())

    async def _resync_claims(self) -> None:
        """Periodically queue every PVC, as failed syncs aren't re-queued."""

        while True:

            await sleep(self.resync_period.total_seconds())

            try:
                pvcs = await CoreV1Api(
                    self.api_client
                ).list_persistent_volume_claim_for_all_namespaces()
            except Exception:
                log_error(f"Error while listing PVCs:\n{format_exc()}")
                continue

            for pvc in pvcs.items:
                self.__queue.add(ObjectRef.of(pvc).key)

    async def _work(self) -> None:

        while True:

            try:
                key = await self.__queue.get()
            except QueueShutDown:
                return

            try:
                await self.sync(key)
            except Exception:
                log_error(f"Error while syncing PVC {key}:\n{format_exc()}")
            finally:
                self.__queue.done(key)

    # ------------------------------------------------------------------------ #
    # Reconciliation

    async def sync(self, key: str) -> None:

        namespace, name = split_key(key)
        ref = ObjectRef(name=name, namespace=namespace)

        loop = get_running_loop()
        start_time = loop.time()

        try:

            try:
                pvc = await CoreV1Api(
                    self.api_client
                ).read_namespaced_persistent_volume_claim(
                    name=name, namespace=namespace
                )
            except ApiException as e:
                if not is_not_found(e):
                    raise
                await self.release_volume(ref)
            else:
                await self.provision_volume(pvc)

        finally:

            elapsed = loop.time() - start_time
            log(f"Finished syncing PVC {ref} ({elapsed:.3f}s)")

    async def provision_volume(self, pvc: V1PersistentVolumeClaim) -> None:
        """Allocate, format, and mount the logical volume of a PVC assigned to
        this node, then record the mount point in the PVC."""

        ref = ObjectRef.of(pvc)
        annotations = ClaimAnnotations.from_metadata(pvc.metadata)

        try:
            if not annotations.is_pending_on(self.node_name):
                raise UnsupportedClaimError(
                    f"PVC {ref} not assigned to this node or already"
                    f" provisioned"
                )
            vg_name = annotations.require("vg_name", f"PVC {ref}")
            lv_name = annotations.require("lv_name", f"PVC {ref}")
            size = annotations.require("lv_size", f"PVC {ref}")
        except (MissingAnnotationError, UnsupportedClaimError) as e:
            log(f"{e}, skipping")
            return

        fs_type = annotations.fs_type or self.default_fs_type

        async with self.__lvm_lock:
            self.lvm.allocate(lv_name, vg_name, size)

            # an earlier sync may have mounted the LV and then failed to
            # update the PVC

            if self.lvm.is_mounted(lv_name):
                log(f"LV {vg_name}/{lv_name} already mounted")
                host_path = self.lvm.mount_path(lv_name)
            else:
                self.lvm.format(lv_name, vg_name, fs_type)
                host_path = self.lvm.mount(lv_name, vg_name)

        def modifier(pvc: V1PersistentVolumeClaim) -> None:
            if ClaimAnnotations.from_metadata(pvc.metadata).is_pending_on(
                self.node_name
            ):
                ClaimAnnotations(host_path=str(host_path)).apply_to(
                    pvc.metadata
                )

        await atomically_modify_persistent_volume_claim(
            api_client=self.api_client,
            name=ref.name,
            namespace=ref.namespace,
            modifier=modifier,
        )

        log(f"Provisioned PVC {ref}: LV {vg_name}/{lv_name} at {host_path}")

        await self.refresh()

    async def release_volume(self, claim_ref: ObjectRef) -> None:
        """Unmount and remove the logical volume of a deleted PVC, if this node
        owns it, then flag its PV as deleted."""

        pv = await find_persistent_volume_for_claim(self.api_client, claim_ref)

        if pv is None:
            log(f"No PV found for PVC {claim_ref}")
            return

        pv_name = pv.metadata.name
        annotations = VolumeAnnotations.from_metadata(pv.metadata)

        if annotations.node != self.node_name:
            log(f"PV {pv_name} not managed by this node")
            return

        if annotations.lv_deleted:
            log(f"LV of PV {pv_name} already deleted")
            return

        try:
            lv_name = annotations.require("lv_name", f"PV {pv_name}")
            vg_name = annotations.require("vg_name", f"PV {pv_name}")
        except MissingAnnotationError as e:
            log(f"{e}, skipping")
            return

        async with self.__lvm_lock:
            self.lvm.unmount(lv_name)
            self.lvm.remove(lv_name, vg_name)

        await self.mark_volume_deleted(pv_name)

        log(f"Released PVC {claim_ref}: removed LV {vg_name}/{lv_name}")

        await self.refresh()

    async def mark_volume_deleted(self, pv_name: str) -> V1PersistentVolume:
        """Raises ConflictTimeoutError if updates keep conflicting for longer
        than the configured timeout."""

        def modifier(pv: V1PersistentVolume) -> None:
            VolumeAnnotations(lv_deleted=True).apply_to(pv.metadata)

        return await atomically_modify_persistent_volume(
            api_client=self.api_client,
            name=pv_name,
            modifier=modifier,
            retry_interval=self.delete_retry_interval,
            timeout=self.delete_retry_timeout,
        )

    async def refresh(self) -> None:
        """Rescan LVM so that later allocations see current free capacity, and
        publish that capacity on the node."""

        async with self.__lvm_lock:
            self.lvm.refresh()

        await self.update_node_status(self.lvm.volume_groups)

    # ------------------------------------------------------------------------ #
    # Node status

    def node_status_patches(
        self, volume_groups: Mapping[str, VolumeGroup]
    ) -> list[dict[str, str]]:

        vg = volume_groups.get(self.volume_group)

        if vg is None:
            return []

        # LVM prefixes rounded sizes with '<', which isn't a valid quantity

        return [
            {
                "op": "add",
                "path": f"/status/capacity/{self.domain_name}~1{vg.name}",
                "value": vg.free.lstrip("<").upper(),
            }
        ]

    async def update_node_status(
        self, volume_groups: Mapping[str, VolumeGroup]
    ) -> None:

        patches = self.node_status_patches(volume_groups)

        if not patches:
            log(f"VG {self.volume_group} not found, not updating node status")
            return

        log(f"Patching status of node {self.node_name}: {patches}")

        await patch_node_status(
            api_client=self.api_client,
            node_name=self.node_name,
            patches=patches,
        )


# ---------------------------------------------------------------------------- #
