"""Serve one of the apps with uvicorn.

Usage::

    python -m ordersaga orders      # PORT defaults to 3000
    python -m ordersaga inventory   # 3002
    python -m ordersaga payments    # 3001
    python -m ordersaga all         # every router in one process, 3000

``HOST``, ``PORT``, ``UVICORN_WORKERS`` and ``LOG_LEVEL`` are read from the
environment.
"""

import argparse
import os

import uvicorn

APPS = {
    "orders": ("ordersaga.orders.main:create_app", 3000),
    "inventory": ("ordersaga.services.inventory.main:create_app", 3002),
    "payments": ("ordersaga.services.payments.main:create_app", 3001),
    "all": ("ordersaga.app:create_app", 3000),
}


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(prog="ordersaga", description="Run an order saga service.")
    parser.add_argument("app", choices=sorted(APPS), help="which app to serve")
    args = parser.parse_args(argv)

    target, default_port = APPS[args.app]
    uvicorn.run(
        target,
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", str(default_port))),
        workers=int(os.getenv("UVICORN_WORKERS", "1")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
