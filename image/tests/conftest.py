# ---------------------------------------------------------------------------- #

from __future__ import annotations

import json
from asyncio import Event
from collections.abc import AsyncIterator, Callable, Sequence
from copy import deepcopy
from typing import Any, Optional

import pytest
import pytest_asyncio
from kubernetes_asyncio.client import (  # type: ignore
    ApiClient,
    ApiException,
    V1ListMeta,
    V1ObjectMeta,
    V1ObjectReference,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
    V1PersistentVolumeClaimList,
    V1PersistentVolumeClaimSpec,
    V1PersistentVolumeList,
    V1PersistentVolumeSpec,
    V1ResourceRequirements,
)

from klvm.manager.lvm import get_device_path
from klvm.shared.errors import ToolExecutionError

# ---------------------------------------------------------------------------- #
# Kubernetes API


class FakeCluster:
    """In-memory PVCs, PVs, and node status patches. Objects handed out are
    copies, so callers must replace them for changes to stick."""

    pvcs: dict[str, V1PersistentVolumeClaim]
    pvs: dict[str, V1PersistentVolume]
    node_patches: list[tuple[str, list[dict[str, str]]]]
    replace_errors: list[int]
    """Statuses with which to fail the next replace calls, in order."""
    replace_count: int
    interleaved_writes: list[Callable[[V1PersistentVolumeClaim], None]]
    """Changes made to a stored PVC right after the next reads of it, in order,
    as if by another client. Replacing with a stale copy then conflicts."""

    def __init__(self) -> None:
        self.pvcs = {}
        self.pvs = {}
        self.node_patches = []
        self.replace_errors = []
        self.replace_count = 0
        self.interleaved_writes = []

    def add_pvc(self, pvc: V1PersistentVolumeClaim) -> None:
        self.pvcs[f"{pvc.metadata.namespace}/{pvc.metadata.name}"] = pvc

    def add_pv(self, pv: V1PersistentVolume) -> None:
        self.pvs[pv.metadata.name] = pv

    def pvc_annotations(self, key: str) -> dict[str, str]:
        return dict(self.pvcs[key].metadata.annotations or {})

    def pv_annotations(self, name: str) -> dict[str, str]:
        return dict(self.pvs[name].metadata.annotations or {})


def _next_version(resource_version: Optional[str]) -> str:
    return str(int(resource_version or "0") + 1)


class FakeCoreV1Api:
    cluster: FakeCluster

    def __init__(self, cluster: FakeCluster) -> None:
        self.cluster = cluster

    def _replace(self, objects: dict[str, Any], key: str, body: Any) -> Any:

        self.cluster.replace_count += 1

        if self.cluster.replace_errors:
            raise ApiException(status=self.cluster.replace_errors.pop(0))

        if key not in objects:
            raise ApiException(status=404)

        stored_version = objects[key].metadata.resource_version

        if body.metadata.resource_version != stored_version:
            raise ApiException(status=409)

        body = deepcopy(body)
        body.metadata.resource_version = _next_version(stored_version)

        objects[key] = body
        return deepcopy(body)

    async def read_namespaced_persistent_volume_claim(
        self, name: str, namespace: str
    ) -> V1PersistentVolumeClaim:

        pvc = self.cluster.pvcs.get(f"{namespace}/{name}")

        if pvc is None:
            raise ApiException(status=404)

        result = deepcopy(pvc)

        if self.cluster.interleaved_writes:
            self.cluster.interleaved_writes.pop(0)(pvc)
            pvc.metadata.resource_version = _next_version(
                pvc.metadata.resource_version
            )

        return result

    async def replace_namespaced_persistent_volume_claim(
        self, name: str, namespace: str, body: V1PersistentVolumeClaim
    ) -> V1PersistentVolumeClaim:
        return self._replace(self.cluster.pvcs, f"{namespace}/{name}", body)

    async def list_persistent_volume_claim_for_all_namespaces(
        self, **kwargs: Any
    ) -> V1PersistentVolumeClaimList:
        return V1PersistentVolumeClaimList(
            items=[deepcopy(pvc) for pvc in self.cluster.pvcs.values()],
            metadata=V1ListMeta(resource_version="7"),
        )

    async def list_persistent_volume(self) -> V1PersistentVolumeList:
        return V1PersistentVolumeList(
            items=[deepcopy(pv) for pv in self.cluster.pvs.values()],
            metadata=V1ListMeta(),
        )

    async def read_persistent_volume(self, name: str) -> V1PersistentVolume:

        pv = self.cluster.pvs.get(name)

        if pv is None:
            raise ApiException(status=404)

        return deepcopy(pv)

    async def replace_persistent_volume(
        self, name: str, body: V1PersistentVolume
    ) -> V1PersistentVolume:
        return self._replace(self.cluster.pvs, name, body)

    async def patch_node_status(
        self, name: str, body: list[dict[str, str]]
    ) -> None:
        self.cluster.node_patches.append((name, body))


class FakeWatch:
    """Streams the given events once, then either ends the stream or, if
    'block' is set, waits until cancelled."""

    events: list[dict[str, Any]]
    block: bool
    stream_kwargs: list[dict[str, Any]]

    def __init__(
        self, events: Sequence[dict[str, Any]], *, block: bool = False
    ) -> None:
        self.events = list(events)
        self.block = block
        self.stream_kwargs = []

    async def __aenter__(self) -> FakeWatch:
        return self

    async def __aexit__(self, *args: object) -> None:
        pass

    def stream(
        self, list_fn: Any, **kwargs: Any
    ) -> AsyncIterator[dict[str, Any]]:
        self.stream_kwargs.append(kwargs)
        return self._events()

    async def _events(self) -> AsyncIterator[dict[str, Any]]:

        for event in self.events:
            yield event

        if self.block:
            await Event().wait()


@pytest.fixture
def cluster(monkeypatch: pytest.MonkeyPatch) -> FakeCluster:

    cluster = FakeCluster()

    for module in [
        "klvm.shared.kubernetes",
        "klvm.manager.controller",
        "klvm.scheduler.extender",
    ]:
        monkeypatch.setattr(
            f"{module}.CoreV1Api", lambda api_client: FakeCoreV1Api(cluster)
        )

    return cluster


@pytest_asyncio.fixture
async def api_client() -> AsyncIterator[ApiClient]:
    async with ApiClient() as client:
        yield client


def make_pvc(
    name: str = "c",
    namespace: str = "ns",
    *,
    annotations: Optional[dict[str, str]] = None,
    storage_class: str = "lvm-volume-provisioner",
    storage: str = "10Gi",
) -> V1PersistentVolumeClaim:

    return V1PersistentVolumeClaim(
        metadata=V1ObjectMeta(
            name=name, namespace=namespace, annotations=annotations
        ),
        spec=V1PersistentVolumeClaimSpec(
            storage_class_name=storage_class,
            access_modes=["ReadWriteOnce"],
            resources=V1ResourceRequirements(requests={"storage": storage}),
        ),
    )


def make_pv(
    name: str,
    *,
    claim: tuple[str, str],
    annotations: Optional[dict[str, str]] = None,
) -> V1PersistentVolume:

    namespace, claim_name = claim

    return V1PersistentVolume(
        metadata=V1ObjectMeta(name=name, annotations=annotations),
        spec=V1PersistentVolumeSpec(
            claim_ref=V1ObjectReference(namespace=namespace, name=claim_name)
        ),
    )


# ---------------------------------------------------------------------------- #
# LVM command line tools


class FakeHost:
    """
    Answers the LVM commands that LVManager runs from in-memory state.

    'lvcreate' and 'lvremove' change that state; every other command that
    isn't a report is only recorded. Commands named in 'failing' exit with an
    error, and reports named in 'corrupt' print garbage.
    """

    vgs: dict[str, dict[str, Any]]
    orphan_pvs: list[str]
    commands: list[list[str]]
    failing: set[str]
    corrupt: set[str]

    def __init__(self) -> None:
        self.vgs = {}
        self.orphan_pvs = []
        self.commands = []
        self.failing = set()
        self.corrupt = set()

    def add_vg(
        self,
        name: str,
        *,
        size: str = "100.00g",
        free: str = "<50.00g",
        tags: str = "",
        pvs: Sequence[str] = ("/dev/loop0",),
    ) -> None:
        self.vgs[name] = {
            "size": size,
            "free": free,
            "tags": tags,
            "pvs": list(pvs),
            "lvs": {},
        }

    def add_lv(self, vg_name: str, lv_name: str, size: str = "1.00g") -> None:
        self.vgs[vg_name]["lvs"][lv_name] = size

    def commands_named(self, name: str) -> list[list[str]]:
        return [command for command in self.commands if command[0] == name]

    def __call__(self, args: Sequence[str]) -> str:

        args = list(args)
        self.commands.append(args)

        command = args[0]

        if command in self.failing:
            raise ToolExecutionError(args, 5, f"  {command} failed\n")

        if command in self.corrupt:
            return "{ not a report"

        if command == "vgs":
            return self._report("vg", self._vg_rows())
        elif command == "pvs":
            return self._report("pv", self._pv_rows())
        elif command == "lvs":
            return self._report("lv", self._lv_rows())
        elif command == "lvcreate":
            name = args[args.index("--name") + 1]
            size = args[args.index("--size") + 1]
            self.add_lv(args[-1], name, size)
        elif command == "lvremove":
            for vg_name, vg in self.vgs.items():
                for lv_name in list(vg["lvs"]):
                    if str(get_device_path(lv_name, vg_name)) == args[-1]:
                        del vg["lvs"][lv_name]

        return ""

    @staticmethod
    def _report(section: str, rows: list[dict[str, str]]) -> str:
        return json.dumps({"report": [{section: rows}]})

    def _vg_rows(self) -> list[dict[str, str]]:
        return [
            {
                "vg_uuid": f"uuid-{name}",
                "vg_name": name,
                "vg_size": vg["size"],
                "vg_free": vg["free"],
                "lv_count": str(len(vg["lvs"])),
                "pv_count": str(len(vg["pvs"])),
                "vg_tags": vg["tags"],
            }
            for name, vg in self.vgs.items()
        ]

    def _pv_rows(self) -> list[dict[str, str]]:

        rows = [
            {
                "pv_uuid": f"uuid-{pv}",
                "pv_name": pv,
                "vg_name": vg_name,
                "pv_size": vg["size"],
                "pv_free": vg["free"],
            }
            for vg_name, vg in self.vgs.items()
            for pv in vg["pvs"]
        ]

        rows += [
            {
                "pv_uuid": f"uuid-{pv}",
                "pv_name": pv,
                "vg_name": "",
                "pv_size": "10.00g",
                "pv_free": "10.00g",
            }
            for pv in self.orphan_pvs
        ]

        return rows

    def _lv_rows(self) -> list[dict[str, str]]:
        return [
            {
                "lv_uuid": f"uuid-{vg_name}-{lv_name}",
                "lv_name": lv_name,
                "lv_size": size,
                "lv_path": f"/dev/{vg_name}/{lv_name}",
                "vg_name": vg_name,
            }
            for vg_name, vg in self.vgs.items()
            for lv_name, size in vg["lvs"].items()
        ]


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


# ---------------------------------------------------------------------------- #
