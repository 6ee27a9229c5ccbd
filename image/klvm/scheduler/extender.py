# ---------------------------------------------------------------------------- #

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Optional

from kubernetes_asyncio.client import (  # type: ignore
    ApiClient,
    CoreV1Api,
    V1PersistentVolumeClaim,
    V1Pod,
)

from klvm.shared.annotations import ClaimAnnotations
from klvm.shared.errors import ExtenderError
from klvm.shared.kubernetes import (
    ObjectRef,
    atomically_modify_persistent_volume_claim,
)
from klvm.shared.util import log

# ---------------------------------------------------------------------------- #

NOT_BOUND_ERROR = "waiting for claim to be bound to a volume"
"""Filter error telling the Kubernetes scheduler to retry the pod later."""

ExtenderArgs = Mapping[str, Any]
ExtenderFilterResult = dict[str, Any]
HostPriorityList = list[dict[str, Any]]


class Scheduler(ABC):
    """A Kubernetes scheduler extender. Arguments and results follow the JSON
    encoding of the extender API."""

    @abstractmethod
    async def filter(self, args: ExtenderArgs) -> ExtenderFilterResult:
        raise NotImplementedError

    @abstractmethod
    async def priority(self, args: ExtenderArgs) -> HostPriorityList:
        raise NotImplementedError


# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class CandidateNodes:
    """The nodes that the scheduler asks the extender to filter. The scheduler
    sends either full Node objects or, if the extender is configured as
    'nodeCacheCapable', only their names."""

    nodes: Optional[Sequence[Mapping[str, Any]]]
    node_names: Optional[Sequence[str]]

    @staticmethod
    def from_args(args: ExtenderArgs) -> CandidateNodes:

        node_list = args.get("nodes")

        return CandidateNodes(
            nodes=None if node_list is None else node_list.get("items") or [],
            node_names=args.get("nodenames"),
        )

    @property
    def names(self) -> list[str]:

        if self.nodes is not None:
            return [node["metadata"]["name"] for node in self.nodes]
        else:
            return list(self.node_names or [])

    def only(self, node_name: str) -> CandidateNodes:
        return CandidateNodes(
            nodes=(
                None
                if self.nodes is None
                else [
                    node
                    for node in self.nodes
                    if node["metadata"]["name"] == node_name
                ]
            ),
            node_names=None if self.node_names is None else [node_name],
        )

    def to_result(self) -> ExtenderFilterResult:
        return {
            "nodes": (
                None if self.nodes is None else {"items": list(self.nodes)}
            ),
            "nodenames": (
                None if self.node_names is None else list(self.node_names)
            ),
            "failedNodes": {},
            "error": "",
        }


def error_result(message: str) -> ExtenderFilterResult:
    return {
        "nodes": None,
        "nodenames": None,
        "failedNodes": {},
        "error": message,
    }


# ---------------------------------------------------------------------------- #


class LVMScheduler(Scheduler):
    """
    Pins PVCs of the configured storage class to a node and a volume group.

    The first time a pod using such a PVC is filtered, the first candidate node
    is picked, the assignment is recorded in the PVC's annotations, and the pod
    is rejected with NOT_BOUND_ERROR so that the scheduler retries it. Once the
    node manager has provisioned the volume and recorded its host path, the pod
    is only allowed onto that node.
    """

    api_client: ApiClient
    domain_name: str
    storage_class: str

    def __init__(
        self, api_client: ApiClient, domain_name: str, storage_class: str
    ) -> None:

        self.api_client = api_client
        self.domain_name = domain_name
        self.storage_class = storage_class

    async def filter(self, args: ExtenderArgs) -> ExtenderFilterResult:

        pod = self.read_pod(args)
        candidates = CandidateNodes.from_args(args)

        pod_ref = ObjectRef.of(pod)

        log(f"Start scheduling pod {pod_ref}")

        # get PVC

        pvc_name = get_claim_name(pod)

        if pvc_name is None:
            raise ExtenderError(f"Pod {pod_ref} doesn't use any PVC")

        pvc = await CoreV1Api(
            self.api_client
        ).read_namespaced_persistent_volume_claim(
            name=pvc_name, namespace=pod_ref.namespace
        )

        pvc_ref = ObjectRef(name=pvc_name, namespace=pod_ref.namespace)

        if pvc.spec.storage_class_name != self.storage_class:
            log(
                f"PVC {pvc_ref} has storage class"
                f" {pvc.spec.storage_class_name}, not {self.storage_class}"
            )
            return candidates.to_result()

        # check if volume was already provisioned

        annotations = ClaimAnnotations.from_metadata(pvc.metadata)

        if annotations.node and annotations.host_path:

            if annotations.node in candidates.names:
                log(f"Pod {pod_ref} will be scheduled on {annotations.node}")
                return candidates.only(annotations.node).to_result()

            return error_result(
                f"invalid node {annotations.node} for PVC {pvc_ref} with host"
                f" path {annotations.host_path}"
            )

        # assign PVC to a node and volume group

        requested = self.get_requested_capacity(pod)

        if requested is None:
            raise ExtenderError(
                f"Pod {pod_ref} doesn't request any {self.domain_name}"
                f" resource"
            )

        vg_name, size = requested

        node_name = annotations.node or next(iter(candidates.names), None)

        if node_name is None:
            raise ExtenderError(f"No candidate nodes for pod {pod_ref}")

        assignment = ClaimAnnotations(
            node=node_name,
            vg_name=vg_name,
            lv_name=f"{pvc_ref.namespace}-{pvc_ref.name}",
            lv_size=size,
            host_path="",
            pod_name=pod_ref.name,
        )

        def modifier(pvc: V1PersistentVolumeClaim) -> None:
            # never take back a host path set in the meantime
            if not ClaimAnnotations.from_metadata(pvc.metadata).is_provisioned:
                assignment.apply_to(pvc.metadata)

        await atomically_modify_persistent_volume_claim(
            api_client=self.api_client,
            name=pvc_ref.name,
            namespace=pvc_ref.namespace,
            modifier=modifier,
        )

        log(
            f"Assigned PVC {pvc_ref} to node {node_name}, VG {vg_name},"
            f" size {size}"
        )

        return error_result(NOT_BOUND_ERROR)

    async def priority(self, args: ExtenderArgs) -> HostPriorityList:
        return []

    def read_pod(self, args: ExtenderArgs) -> V1Pod:

        if not isinstance(args.get("pod"), Mapping):
            raise ExtenderError("Extender arguments don't include a pod")

        pod = self.api_client.deserialize(
            response=SimpleNamespace(data=json.dumps(args["pod"])),
            response_type="V1Pod",
        )

        assert type(pod) is V1Pod
        return pod

    def get_requested_capacity(self, pod: V1Pod) -> Optional[tuple[str, str]]:
        """Return the volume group name and size of the first resource request
        of the form '<domain>/<volume group>: <size>'."""

        prefix = f"{self.domain_name}/"

        for container in pod.spec.containers or []:

            if container.resources is None:
                continue

            for name, quantity in (container.resources.requests or {}).items():
                if name.startswith(prefix):
                    return name[len(prefix) :], str(quantity)

        return None


def get_claim_name(pod: V1Pod) -> Optional[str]:
    """Only the first PVC of a pod is supported."""

    return next(
        (
            volume.persistent_volume_claim.claim_name
            for volume in pod.spec.volumes or []
            if volume.persistent_volume_claim is not None
        ),
        None,
    )


# ---------------------------------------------------------------------------- #
