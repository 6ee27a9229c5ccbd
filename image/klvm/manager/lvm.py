# ---------------------------------------------------------------------------- #

from __future__ import annotations

import json
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from klvm.shared.config import DEVICE_DIR_PATH
from klvm.shared.errors import (
    LVMError,
    ParseError,
    ToolExecutionError,
    VolumeGroupNotFoundError,
)
from klvm.shared.kubernetes import parse_and_round_quantity
from klvm.shared.util import log

# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class PhysicalVolume:
    uuid: str
    name: str
    size: str
    free: str


@dataclass(frozen=True)
class LogicalVolume:
    uuid: str
    name: str
    size: str
    path: str


@dataclass(frozen=True)
class VolumeGroup:
    uuid: str
    name: str
    size: str
    free: str
    tags: tuple[str, ...] = ()
    pvs: dict[str, PhysicalVolume] = field(default_factory=dict)
    lvs: dict[str, LogicalVolume] = field(default_factory=dict)


def get_device_path(lv_name: str, vg_name: str) -> Path:
    """Path of the device-mapper node of a logical volume. Hyphens in either
    name are doubled, and the two names are then joined by a single hyphen."""

    vg = vg_name.replace("-", "--")
    lv = lv_name.replace("-", "--")

    return DEVICE_DIR_PATH / f"{vg}-{lv}"


# ---------------------------------------------------------------------------- #

Runner = Callable[[Sequence[str]], str]


def run_command(args: Sequence[str]) -> str:
    """Run a host command and return its standard output. Raises
    ToolExecutionError if the command fails."""

    process = subprocess.run(
        args=list(args),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        encoding="utf-8",
        check=False,
    )

    if process.returncode != 0:
        raise ToolExecutionError(
            command=args,
            returncode=process.returncode,
            output=process.stderr or process.stdout,
        )

    return process.stdout


# ---------------------------------------------------------------------------- #

_VG_COLUMNS = (
    "vg_uuid",
    "vg_name",
    "vg_size",
    "vg_free",
    "lv_count",
    "pv_count",
    "vg_tags",
)
_PV_COLUMNS = ("pv_uuid", "pv_name", "vg_name", "pv_size", "pv_free")
_LV_COLUMNS = ("lv_uuid", "lv_name", "lv_size", "lv_path", "vg_name")


class LVManager:
    """
    Runs LVM operations on the host and keeps a snapshot of its volume groups.

    The snapshot is only ever replaced as a whole, by refresh(). It is not
    updated by the other operations, so callers should refresh after changing
    anything. None of the operations retry on failure.

    Not safe for concurrent use; callers must serialize operations.
    """

    base_dir: Path

    __runner: Runner
    __volume_groups: dict[str, VolumeGroup]

    def __init__(self, base_dir: Path, *, runner: Runner = run_command):

        self.base_dir = base_dir

        self.__runner = runner
        self.__volume_groups = {}

    @property
    def volume_groups(self) -> Mapping[str, VolumeGroup]:
        return MappingProxyType(self.__volume_groups)

    def _run(self, *args: str) -> str:
        log(f"Running: {' '.join(args)}")
        return self.__runner(args)

    # ------------------------------------------------------------------------ #

    def refresh(self) -> None:
        """Rescan volume groups, physical volumes, and logical volumes. If any
        scan fails, the previous snapshot is kept."""

        vg_rows = self._scan("vgs", "vg", _VG_COLUMNS)
        pv_rows = self._scan("pvs", "pv", _PV_COLUMNS)
        lv_rows = self._scan("lvs", "lv", _LV_COLUMNS)

        volume_groups = {
            row["vg_name"]: VolumeGroup(
                uuid=row["vg_uuid"],
                name=row["vg_name"],
                size=row["vg_size"],
                free=row["vg_free"],
                tags=tuple(tag for tag in row["vg_tags"].split(",") if tag),
            )
            for row in vg_rows
        }

        # PVs that aren't in any VG have an empty 'vg_name'

        for row in pv_rows:
            if (vg := volume_groups.get(row["vg_name"])) is not None:
                vg.pvs[row["pv_name"]] = PhysicalVolume(
                    uuid=row["pv_uuid"],
                    name=row["pv_name"],
                    size=row["pv_size"],
                    free=row["pv_free"],
                )

        for row in lv_rows:
            if (vg := volume_groups.get(row["vg_name"])) is not None:
                vg.lvs[row["lv_name"]] = LogicalVolume(
                    uuid=row["lv_uuid"],
                    name=row["lv_name"],
                    size=row["lv_size"],
                    path=row["lv_path"],
                )

        self.__volume_groups = volume_groups

    def _scan(
        self, command: str, section: str, columns: Sequence[str]
    ) -> list[dict[str, str]]:

        output = self._run(
            command,
            "-o",
            ",".join(columns),
            "--units",
            "H",
            "--reportformat",
            "json",
        )

        try:
            report = json.loads(output)
            rows: list[Any] = [
                row for entry in report["report"] for row in entry[section]
            ]
        except (ValueError, KeyError, TypeError) as e:
            raise ParseError(f"Invalid '{command}' report: {e!r}") from e

        for row in rows:
            if not isinstance(row, dict) or not all(
                isinstance(row.get(column), str) for column in columns
            ):
                raise ParseError(f"Invalid '{command}' report row: {row!r}")

        return rows

    # ------------------------------------------------------------------------ #

    def allocate(self, lv_name: str, vg_name: str, size: str) -> None:
        """
        Create a logical volume with the given size, a Kubernetes quantity
        (e.g., "10Gi").

        Does nothing if the volume group already has a logical volume with
        that name. Raises VolumeGroupNotFoundError if there is no such volume
        group. Refreshes the snapshot after creating the volume, so calling
        this again with the same arguments is a no-op.
        """

        vg = self.__volume_groups.get(vg_name)

        if vg is None:
            raise VolumeGroupNotFoundError(vg_name)

        if lv_name in vg.lvs:
            log(f"LV {lv_name} already exists in VG {vg_name}")
            return

        try:
            size_in_bytes = parse_and_round_quantity(size)
        except ValueError as e:
            raise LVMError(f"Invalid LV size {size!r}") from e

        self._run(
            "lvcreate",
            "--zero",
            "n",
            "--name",
            lv_name,
            "--size",
            f"{size_in_bytes}b",
            vg_name,
        )

        self.refresh()

    def format(self, lv_name: str, vg_name: str, fs_type: str) -> None:

        device_path = get_device_path(lv_name, vg_name)
        self._run("mkfs", "--type", fs_type, str(device_path))

    def mount(self, lv_name: str, vg_name: str) -> Path:
        """Mount the logical volume under the base directory and return the
        absolute path of the mount point."""

        mount_path = self.mount_path(lv_name)
        mount_path.mkdir(parents=True, exist_ok=True)

        device_path = get_device_path(lv_name, vg_name)
        self._run("mount", str(device_path), str(mount_path))

        return mount_path

    def unmount(self, name: str) -> None:
        self._run("umount", str(self.mount_path(name)))

    def mount_path(self, name: str) -> Path:
        return (self.base_dir / name).absolute()

    def is_mounted(self, name: str) -> bool:
        return self.mount_path(name).is_mount()

    def remove(self, lv_name: str, vg_name: str) -> None:

        device_path = get_device_path(lv_name, vg_name)
        self._run("lvremove", "--force", "--yes", str(device_path))


# ---------------------------------------------------------------------------- #
