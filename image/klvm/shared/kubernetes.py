# ---------------------------------------------------------------------------- #

from __future__ import annotations

from asyncio import get_running_loop, sleep
from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_CEILING, Decimal
from http import HTTPStatus
from typing import Any, Optional, TypeVar

from kubernetes.utils import parse_quantity  # type: ignore
from kubernetes_asyncio.client import (  # type: ignore
    ApiClient,
    ApiException,
    CoreV1Api,
    V1Node,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
)
from kubernetes_asyncio.watch import Watch  # type: ignore

from klvm.shared.errors import ConflictTimeoutError

# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ObjectRef:
    name: str
    namespace: str

    @staticmethod
    def of(obj: Any) -> ObjectRef:
        return ObjectRef(
            name=obj.metadata.name, namespace=obj.metadata.namespace
        )

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def __str__(self) -> str:
        return self.key


def parse_and_round_quantity(
    quantity: object, *, rounding_mode: str = ROUND_CEILING
) -> int:

    parsed = parse_quantity(quantity)
    assert isinstance(parsed, Decimal)

    return int(parsed.to_integral_value(rounding=rounding_mode))


def is_not_found(e: ApiException) -> bool:
    return e.status == HTTPStatus.NOT_FOUND


# ---------------------------------------------------------------------------- #


async def find_persistent_volume_for_claim(
    api_client: ApiClient, claim_ref: ObjectRef
) -> Optional[V1PersistentVolume]:
    """Return the first PV whose claimRef points at the given PVC, if any."""

    # The only field selectors valid for PVs are metadata.name and
    # metadata.namespace, so we have to list them all.

    persistent_volumes = await CoreV1Api(api_client).list_persistent_volume()
    assert not persistent_volumes.metadata._continue

    return next(
        (
            pv
            for pv in persistent_volumes.items
            if pv.spec.claim_ref is not None
            and pv.spec.claim_ref.namespace == claim_ref.namespace
            and pv.spec.claim_ref.name == claim_ref.name
        ),
        None,
    )


async def patch_node_status(
    api_client: ApiClient, node_name: str, patches: Sequence[dict[str, str]]
) -> V1Node:
    """Apply a JSON patch to the node's status subresource. The client selects
    the 'application/json-patch+json' content type because the body is a
    list."""

    return await CoreV1Api(api_client).patch_node_status(
        name=node_name, body=list(patches)
    )


# ---------------------------------------------------------------------------- #

T = TypeVar("T")

WatchAllCallback = Callable[[T, bool], Coroutine[Any, Any, None]]


async def watch_all_persistent_volume_claims(
    api_client: ApiClient,
    callback: WatchAllCallback[V1PersistentVolumeClaim],
    *,
    label_selector: Optional[str] = None,
    field_selector: Optional[str] = None,
) -> None:

    return await _watch_all_objects(
        list_fn=CoreV1Api(
            api_client
        ).list_persistent_volume_claim_for_all_namespaces,
        callback=callback,
        label_selector=label_selector,
        field_selector=field_selector,
    )


async def _watch_all_objects(
    list_fn: Callable[..., Coroutine[Any, Any, Any]],
    callback: Callable[[Any, bool], Coroutine[Any, Any, None]],
    *,
    label_selector: Optional[str] = None,
    field_selector: Optional[str] = None,
) -> None:
    """
    The callback must be idempotent, as all objects may be listed several times
    before they start being watched, and also after they start being watched.

    Nevertheless, this function can still miss intermediate updates, although it
    will always eventually invoke the callback with the latest object version.
    Objects deleted while not watching are never reported as deleted; callers
    that care must compare successive listings themselves.

    The callback can raise `StopAsyncIteration` to cause this function to
    return.
    """

    while True:

        # list

        obj_list = await list_fn(
            label_selector=label_selector, field_selector=field_selector
        )

        for obj in obj_list.items:

            try:
                await callback(obj, True)
            except StopAsyncIteration:
                return  # callback requested stop, return

        # watch

        is_callback_api_exception = False

        async with Watch() as watch:

            try:

                stream = watch.stream(
                    list_fn,
                    label_selector=label_selector,
                    field_selector=field_selector,
                    resource_version=obj_list.metadata.resource_version,
                )

                async for event in stream:

                    obj = event["object"]
                    exists = event["type"] != "DELETED"

                    try:
                        await callback(obj, exists)
                    except StopAsyncIteration:
                        return  # callback requested stop, return
                    except ApiException:
                        is_callback_api_exception = True
                        raise

                else:

                    raise RuntimeError("The watch stopped watching")

            except ApiException as e:

                if (
                    not is_callback_api_exception
                    and e.status == HTTPStatus.GONE
                ):
                    pass  # took too long to start watching after listing, retry
                else:
                    raise  # some other error occurred, fail


# ---------------------------------------------------------------------------- #

Modifier = Callable[[T], Any]


async def atomically_modify_persistent_volume_claim(
    api_client: ApiClient,
    name: str,
    namespace: str,
    modifier: Modifier[V1PersistentVolumeClaim],
) -> V1PersistentVolumeClaim:

    api = CoreV1Api(api_client)

    return await _atomically_modify_object(
        read_fn=api.read_namespaced_persistent_volume_claim,
        replace_fn=api.replace_namespaced_persistent_volume_claim,
        name=name,
        namespace=namespace,
        modifier=modifier,
    )


async def atomically_modify_persistent_volume(
    api_client: ApiClient,
    name: str,
    modifier: Modifier[V1PersistentVolume],
    *,
    retry_interval: Optional[timedelta] = None,
    timeout: Optional[timedelta] = None,
) -> V1PersistentVolume:

    api = CoreV1Api(api_client)

    return await _atomically_modify_object(
        read_fn=api.read_persistent_volume,
        replace_fn=api.replace_persistent_volume,
        name=name,
        namespace=None,
        modifier=modifier,
        retry_interval=retry_interval,
        timeout=timeout,
    )


async def _atomically_modify_object(
    read_fn: Callable[..., Coroutine[Any, Any, Any]],
    replace_fn: Callable[..., Coroutine[Any, Any, Any]],
    name: str,
    namespace: Optional[str],
    modifier: Modifier[Any],
    *,
    retry_interval: Optional[timedelta] = None,
    timeout: Optional[timedelta] = None,
) -> Any:
    """
    Atomically applies arbitrary modifications to objects. Use when patching
    is insufficient. Works by reading and replacing the object, retrying if it
    was modified in between. Returns the resulting object.

    Retries wait 'retry_interval' between attempts (no wait if None). If
    'timeout' is not None, gives up with ConflictTimeoutError once that much
    time has passed since the first attempt; otherwise retries indefinitely.
    """

    kwargs = {"name": name}

    if namespace is not None:
        kwargs["namespace"] = namespace

    loop = get_running_loop()
    deadline = (
        None if timeout is None else loop.time() + timeout.total_seconds()
    )

    while True:

        # retrieve object

        obj = await read_fn(**kwargs)

        # adjust object

        original_obj_dict = obj.to_dict()

        result = modifier(obj)

        if hasattr(result, "__await__"):
            await result

        if obj.to_dict() == original_obj_dict:
            return obj  # no changes necessary

        # replace object

        try:

            return await replace_fn(**kwargs, body=obj)

        except ApiException as e:

            # If we failed with 409 CONFLICT, it means that the object's
            # 'metadata.resourceVersion' field has a different value from when
            # we retrieved it. This means that the object was modified in
            # between our read_fn() and replace_fn() calls, in which case we
            # must re-read the object and retry.

            if e.status != HTTPStatus.CONFLICT:
                raise  # some unexpected error occurred

        # wait before retrying, unless we ran out of time

        delay = (
            0.0 if retry_interval is None else retry_interval.total_seconds()
        )

        if deadline is not None:

            remaining = deadline - loop.time()

            if remaining <= 0:
                raise ConflictTimeoutError(
                    f"Gave up modifying {name} after conflicting updates for"
                    f" {timeout}"
                )

            delay = min(delay, remaining)

        await sleep(delay)


# ---------------------------------------------------------------------------- #
