# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Optional, TypeVar

from kubernetes_asyncio.client import V1ObjectMeta  # type: ignore

from klvm.shared.config import (
    ANN_FS_TYPE,
    ANN_HOST_PATH,
    ANN_LV_DELETED,
    ANN_LV_NAME,
    ANN_LV_SIZE,
    ANN_NODE,
    ANN_POD_NAME,
    ANN_VG_NAME,
)
from klvm.shared.errors import MissingAnnotationError

# ---------------------------------------------------------------------------- #

_AnnotationsT = TypeVar("_AnnotationsT", bound="_Annotations")


def _key(key: str) -> Any:
    return field(default=None, metadata={"key": key})


@dataclass(frozen=True)
class _Annotations:
    """
    Typed view over the annotations through which the scheduler extender, the
    node managers, and the provisioner coordinate.

    Fields are None when the corresponding annotation is absent. Note that an
    annotation may be present but empty, which is distinct from it being
    absent (e.g., an empty host path means "assigned but not yet
    provisioned").
    """

    __ENCODE: ClassVar[Mapping[Any, Callable[[Any], Optional[str]]]] = {
        "Optional[str]": lambda s: s,
        "bool": lambda b: "true" if b else None,
    }

    __DECODE: ClassVar[Mapping[Any, Callable[[Optional[str]], Any]]] = {
        "Optional[str]": lambda v: v,
        "bool": lambda v: v == "true",
    }

    @classmethod
    def from_annotations(
        cls: type[_AnnotationsT], annotations: Optional[Mapping[str, str]]
    ) -> _AnnotationsT:

        annotations = annotations or {}

        kwargs = {
            f.name: _Annotations.__DECODE[f.type](
                annotations.get(f.metadata["key"])
            )
            for f in fields(cls)
        }

        return cls(**kwargs)

    @classmethod
    def from_metadata(
        cls: type[_AnnotationsT], metadata: V1ObjectMeta
    ) -> _AnnotationsT:
        return cls.from_annotations(metadata.annotations)

    def to_annotations(self) -> dict[str, str]:
        """Only includes annotations for fields that are set."""

        encoded = {
            f.metadata["key"]: _Annotations.__ENCODE[f.type](
                getattr(self, f.name)
            )
            for f in fields(self)
        }

        return {
            key: value for key, value in encoded.items() if value is not None
        }

    def apply_to(self, metadata: V1ObjectMeta) -> None:

        if metadata.annotations is None:
            metadata.annotations = {}

        metadata.annotations |= self.to_annotations()

    def require(self, field_name: str, object_name: str) -> str:

        value = getattr(self, field_name)

        if not value:
            key = next(
                f.metadata["key"] for f in fields(self) if f.name == field_name
            )
            raise MissingAnnotationError(object_name, key)

        assert isinstance(value, str)
        return value


# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ClaimAnnotations(_Annotations):
    """
    Annotations of a PVC. Their content determines the PVC's provisioning
    state:

    ```
    Unassigned --[extender]--> Assigned --[node manager]--> Provisioned
    ```

    where Assigned means that 'node' and 'vg_name' are set and 'host_path' is
    empty, and Provisioned means that 'host_path' is not empty. The host path
    never goes back to being empty.
    """

    node: Optional[str] = _key(ANN_NODE)
    vg_name: Optional[str] = _key(ANN_VG_NAME)
    lv_name: Optional[str] = _key(ANN_LV_NAME)
    lv_size: Optional[str] = _key(ANN_LV_SIZE)
    host_path: Optional[str] = _key(ANN_HOST_PATH)
    pod_name: Optional[str] = _key(ANN_POD_NAME)
    fs_type: Optional[str] = _key(ANN_FS_TYPE)

    @property
    def is_assigned(self) -> bool:
        return bool(self.node) and bool(self.vg_name)

    @property
    def is_provisioned(self) -> bool:
        return bool(self.host_path)

    def is_pending_on(self, node_name: str) -> bool:
        """Whether the PVC was assigned to the given node but the node hasn't
        provisioned it yet."""
        return self.node == node_name and self.host_path == ""


@dataclass(frozen=True)
class VolumeAnnotations(_Annotations):
    """Annotations of a PV, copied from its PVC by the provisioner, plus a flag
    that the owning node manager sets once the logical volume is gone."""

    node: Optional[str] = _key(ANN_NODE)
    vg_name: Optional[str] = _key(ANN_VG_NAME)
    lv_name: Optional[str] = _key(ANN_LV_NAME)
    host_path: Optional[str] = _key(ANN_HOST_PATH)
    pod_name: Optional[str] = _key(ANN_POD_NAME)
    lv_deleted: bool = field(default=False, metadata={"key": ANN_LV_DELETED})

    @staticmethod
    def from_claim(claim: ClaimAnnotations) -> VolumeAnnotations:
        return VolumeAnnotations(
            node=claim.node,
            vg_name=claim.vg_name,
            lv_name=claim.lv_name,
            host_path=claim.host_path,
            pod_name=claim.pod_name,
        )


# ---------------------------------------------------------------------------- #
