# ---------------------------------------------------------------------------- #

from __future__ import annotations

from datetime import datetime
from sys import stderr

# ---------------------------------------------------------------------------- #


def split_key(key: str) -> tuple[str, str]:
    """Split a 'namespace/name' key. Keys of cluster-scoped objects have no
    namespace, in which case the namespace is the empty string."""

    namespace, _, name = key.rpartition("/")
    return namespace, name


# ---------------------------------------------------------------------------- #


def log(obj: object) -> None:
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")
    print(f"\033[36m[{now}]\033[0m {obj}", file=stderr, flush=True)


def log_error(obj: object) -> None:
    log(f"\033[31m{obj}\033[0m")


# ---------------------------------------------------------------------------- #
