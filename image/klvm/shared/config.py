# ---------------------------------------------------------------------------- #

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

# ---------------------------------------------------------------------------- #

ANNOTATION_DOMAIN = "volume-provisioner.klvm.io"
"""Prefix of every annotation that the scheduler extender, node manager, and
provisioner use to coordinate with each other."""

ANN_NODE = f"{ANNOTATION_DOMAIN}/node"
ANN_VG_NAME = f"{ANNOTATION_DOMAIN}/vgName"
ANN_LV_NAME = f"{ANNOTATION_DOMAIN}/lvName"
ANN_LV_SIZE = f"{ANNOTATION_DOMAIN}/lvSize"
ANN_HOST_PATH = f"{ANNOTATION_DOMAIN}/hostPath"
ANN_POD_NAME = f"{ANNOTATION_DOMAIN}/podName"
ANN_FS_TYPE = f"{ANNOTATION_DOMAIN}/fsType"
ANN_LV_DELETED = f"{ANNOTATION_DOMAIN}/lvDeleted"

# ---------------------------------------------------------------------------- #

DEFAULT_DOMAIN_NAME = "klvm.io"
"""Domain of the extended resources through which pods request LVM capacity,
e.g. 'klvm.io/loopback-disk: 10Gi'."""

DEFAULT_BASE_DIR = Path("/data")
"""Directory, in the context of the host, under which logical volumes are
mounted."""

DEFAULT_WORKERS = 5
DEFAULT_FS_TYPE = "ext4"
DEFAULT_VOLUME_GROUP = "loopback-disk"
DEFAULT_PORT = 10262
DEFAULT_STORAGE_CLASS = "lvm-volume-provisioner"

NODE_NAME_ENV_VAR = "MY_NODE_NAME"

DEVICE_DIR_PATH = Path("/dev/mapper")

# ---------------------------------------------------------------------------- #

WATCH_RETRY_DELAY = timedelta(seconds=5)
"""Amount of time to wait before restarting the PVC watch after it fails."""

DELETE_RETRY_INTERVAL = timedelta(seconds=3)
DELETE_RETRY_TIMEOUT = timedelta(seconds=30)
"""Bounds on retrying to mark a PV as deleted when updates conflict."""

RESYNC_PERIOD = timedelta(seconds=30)
"""Interval at which all PVCs are queued again, so that failed syncs are
retried even if their PVCs don't change."""

# ---------------------------------------------------------------------------- #


def provisioner_name(domain_name: str) -> str:
    return f"{domain_name}/lvm-volume-provisioner"


# ---------------------------------------------------------------------------- #
