# ---------------------------------------------------------------------------- #

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from kubernetes_asyncio.client import (  # type: ignore
    V1HostPathVolumeSource,
    V1ObjectMeta,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
    V1PersistentVolumeSpec,
)

from klvm.shared.annotations import ClaimAnnotations, VolumeAnnotations
from klvm.shared.config import provisioner_name
from klvm.shared.errors import VolumeNotReadyError
from klvm.shared.kubernetes import ObjectRef

# ---------------------------------------------------------------------------- #

PROVISIONED_BY_ANNOTATION = "pv.kubernetes.io/provisioned-by"


@dataclass(frozen=True)
class VolumeOptions:
    """What an external dynamic provisioning controller passes to a
    provisioner when a PVC needs a PV."""

    pv_name: str
    pvc: V1PersistentVolumeClaim
    reclaim_policy: str = "Delete"


class Provisioner(ABC):
    @abstractmethod
    def provision(self, options: VolumeOptions) -> V1PersistentVolume:
        raise NotImplementedError

    @abstractmethod
    def delete(self, pv: V1PersistentVolume) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------------- #


class LVMProvisioner(Provisioner):
    """
    Turns PVCs that a node manager has provisioned into host path PVs.

    This does no work on the host: logical volumes are created by the node
    managers before provision() succeeds, and removed by them once the PVC is
    gone, which is why delete() does nothing.
    """

    name: str

    def __init__(self, domain_name: str) -> None:
        self.name = provisioner_name(domain_name)

    def provision(self, options: VolumeOptions) -> V1PersistentVolume:
        """Raises VolumeNotReadyError, for the provisioning controller to
        retry later, if the logical volume isn't mounted yet."""

        pvc = options.pvc
        ref = ObjectRef.of(pvc)

        annotations = ClaimAnnotations.from_metadata(pvc.metadata)
        annotations.require("node", f"PVC {ref}")
        annotations.require("pod_name", f"PVC {ref}")

        if not annotations.is_provisioned:
            raise VolumeNotReadyError(
                f"Waiting for the LVM volume manager to create the LV of PVC"
                f" {ref}"
            )

        volume_annotations = VolumeAnnotations.from_claim(annotations)

        return V1PersistentVolume(
            metadata=V1ObjectMeta(
                name=options.pv_name,
                annotations={
                    PROVISIONED_BY_ANNOTATION: self.name,
                    **volume_annotations.to_annotations(),
                },
            ),
            spec=V1PersistentVolumeSpec(
                persistent_volume_reclaim_policy=options.reclaim_policy,
                access_modes=pvc.spec.access_modes,
                capacity={"storage": pvc.spec.resources.requests["storage"]},
                host_path=V1HostPathVolumeSource(path=annotations.host_path),
            ),
        )

    def delete(self, pv: V1PersistentVolume) -> None:
        pass


# ---------------------------------------------------------------------------- #
