# ---------------------------------------------------------------------------- #

from __future__ import annotations

from asyncio import CancelledError, Lock
from collections.abc import Callable, Coroutine
from functools import wraps
from traceback import format_exc
from typing import Any, TypeVar

from aiohttp import web

from klvm.scheduler.extender import Scheduler
from klvm.shared.util import log, log_error

# ---------------------------------------------------------------------------- #

_Handlers = TypeVar("_Handlers", contravariant=True)

_Handler = Callable[[_Handlers, web.Request], Coroutine[Any, Any, web.Response]]

_request_seqnum = 0


def log_request(method: _Handler[_Handlers]) -> _Handler[_Handlers]:
    @wraps(method)
    async def wrapped(self: _Handlers, request: web.Request) -> web.Response:

        global _request_seqnum
        seqnum = _request_seqnum
        _request_seqnum += 1

        header = f"{seqnum}: {request.method} {request.path}"

        log(f"entering {header}")

        try:
            response = await method(self, request)
        except CancelledError:
            log(f"\033[31mexited   {header} --> canceled\033[0m")
            raise
        except Exception:
            log_error(f"exited   {header} --> unhandled exception:")
            log_error(format_exc())
            raise
        else:
            color = "\033[32m" if response.status < 400 else "\033[31m"
            log(f"{color}exited   {header} --> {response.status}\033[0m")
            return response

    return wrapped


def error_response(status: int, message: str) -> web.Response:
    log_error(message)
    return web.json_response(
        {"code": status, "message": message}, status=status
    )


# ---------------------------------------------------------------------------- #


class ExtenderHandlers:
    """HTTP handlers of the scheduler extender. Filtering is serialized, as
    concurrent filter calls for pods sharing a PVC would race to assign it."""

    scheduler: Scheduler

    __filter_lock: Lock

    def __init__(self, scheduler: Scheduler) -> None:
        self.scheduler = scheduler
        self.__filter_lock = Lock()

    @log_request
    async def filter_nodes(self, request: web.Request) -> web.Response:

        async with self.__filter_lock:

            try:
                args = await request.json()
            except ValueError:
                return error_response(400, "unable to read request body")

            if not isinstance(args, dict):
                return error_response(400, "unable to read request body")

            try:
                result = await self.scheduler.filter(args)
            except Exception as e:
                log_error(format_exc())
                return error_response(500, f"unable to filter nodes: {e}")

            try:
                return web.json_response(result)
            except TypeError:
                return error_response(500, "unable to write response")

    @log_request
    async def prioritize_nodes(self, request: web.Request) -> web.Response:

        try:
            args = await request.json()
        except ValueError:
            return error_response(400, "unable to read request body")

        if not isinstance(args, dict):
            return error_response(400, "unable to read request body")

        try:
            result = await self.scheduler.priority(args)
        except Exception as e:
            log_error(format_exc())
            return error_response(500, f"unable to prioritize nodes: {e}")

        try:
            return web.json_response(result)
        except TypeError:
            return error_response(500, "unable to write response")


def create_app(scheduler: Scheduler) -> web.Application:

    handlers = ExtenderHandlers(scheduler)

    app = web.Application()
    app.add_routes(
        [
            web.post("/scheduler/filter", handlers.filter_nodes),
            web.post("/scheduler/prioritize", handlers.prioritize_nodes),
        ]
    )

    return app


# ---------------------------------------------------------------------------- #
