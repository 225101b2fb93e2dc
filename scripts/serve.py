from __future__ import annotations

import argparse

import uvicorn

from pairlink.apps.api.main import create_app
from pairlink.core.config import get_settings


def main() -> None:
    # Serve the trigger API; sessions registered earlier reconnect during startup.
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Run the pairlink HTTP API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=settings.port)
    args = parser.parse_args()
    uvicorn.run(create_app(), host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
