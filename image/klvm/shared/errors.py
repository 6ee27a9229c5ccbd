# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Sequence

# ---------------------------------------------------------------------------- #


class KlvmError(Exception):
    pass


# ---------------------------------------------------------------------------- #
# Host LVM tooling


class LVMError(KlvmError):
    pass


class ParseError(LVMError):
    """An LVM report could not be parsed."""


class ToolExecutionError(LVMError):
    """A host command exited with a non-zero status."""

    command: Sequence[str]
    returncode: int
    output: str

    def __init__(self, command: Sequence[str], returncode: int, output: str):

        self.command = list(command)
        self.returncode = returncode
        self.output = output

        super().__init__(
            f"Command {' '.join(self.command)!r} exited with status"
            f" {returncode}: {output.strip()}"
        )


class VolumeGroupNotFoundError(LVMError):
    def __init__(self, vg_name: str):
        self.vg_name = vg_name
        super().__init__(f"No volume group named {vg_name!r}")


# ---------------------------------------------------------------------------- #
# Cluster objects


class ConflictTimeoutError(KlvmError):
    """Updating an object kept conflicting with concurrent writers until the
    retry timeout expired."""


class MissingAnnotationError(KlvmError):
    def __init__(self, object_name: str, key: str):
        self.object_name = object_name
        self.key = key
        super().__init__(f"{object_name} has no annotation {key!r}")


class UnsupportedClaimError(KlvmError):
    """A claim or volume that isn't this component's to act upon."""


class ExtenderError(KlvmError):
    pass


class VolumeNotReadyError(KlvmError):
    pass


# ---------------------------------------------------------------------------- #
