#!/usr/bin/env python3
"""Run the tripcoord HTTP/WebSocket adapter with in-memory stores.

Usage
-----
::

    python scripts/serve.py                       # demo route data
    python scripts/serve.py --routes routes.json --port 9000 -v

Route data is a JSON object ``{"carriers": [...], "riders": [...]}`` in
camelCase wire form (see ``scripts/demo_routes.json``).  Any
``TRIPCOORD_*`` environment variable is honoured; command-line flags win.

Example calls::

    curl -X POST -H 'X-Actor-Id: driver_1' -H 'X-Actor-Role: operator' \\
        localhost:8080/carriers/bus_1/trips
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from tripcoord import (  # noqa: E402
    CoordinatorConfig,
    InMemoryFactStore,
    InMemoryTripStore,
    StaticRouteDirectory,
    TripCoordinator,
)
from tripcoord.server import run  # noqa: E402

_DEFAULT_ROUTES = Path(__file__).resolve().parent / "demo_routes.json"


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve tripcoord over HTTP with in-memory stores.")
    parser.add_argument("--routes", type=Path, default=_DEFAULT_ROUTES, help="route data JSON file")
    parser.add_argument("--host", default=None, help="bind address (default: TRIPCOORD_HTTP_HOST or 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="bind port (default: TRIPCOORD_HTTP_PORT or 8080)")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides: dict[str, Any] = {}
    if args.host is not None:
        overrides["http_host"] = args.host
    if args.port is not None:
        overrides["http_port"] = args.port
    config = CoordinatorConfig.from_env(**overrides)

    routes = StaticRouteDirectory.from_mapping(json.loads(args.routes.read_text(encoding="utf-8")))
    coordinator = TripCoordinator(InMemoryTripStore(), InMemoryFactStore(), routes, config=config)
    run(coordinator)


if __name__ == "__main__":
    main()
