# ---------------------------------------------------------------------------- #

from __future__ import annotations

from aiohttp import web
from kubernetes_asyncio.client import ApiClient  # type: ignore

from klvm.scheduler.extender import LVMScheduler
from klvm.scheduler.server import create_app
from klvm.shared.util import log

# ---------------------------------------------------------------------------- #


def run(*, port: int, domain_name: str, storage_class: str) -> None:
    async def make_app() -> web.Application:

        api_client = ApiClient()

        app = create_app(
            LVMScheduler(
                api_client=api_client,
                domain_name=domain_name,
                storage_class=storage_class,
            )
        )

        async def close_api_client(app: web.Application) -> None:
            await api_client.close()

        app.on_cleanup.append(close_api_client)

        return app

    log(f"Starting scheduler extender server, listening on 0.0.0.0:{port}")

    # run_app() handles SIGINT and SIGTERM, letting in-flight requests finish

    web.run_app(make_app(), host="0.0.0.0", port=port, print=None)


# ---------------------------------------------------------------------------- #
