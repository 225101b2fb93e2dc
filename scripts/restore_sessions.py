from __future__ import annotations

import argparse
import asyncio
import json
import sys

from pairlink.core.config import get_settings
from pairlink.core.logging import configure_logging
from pairlink.services.supervisor import build_supervisor


async def _restore(args: argparse.Namespace) -> int:
    # Download every registered bundle into its session directory without opening connections.
    supervisor = build_supervisor(get_settings())
    try:
        report = await supervisor.restore_all(connect=False)
    finally:
        await supervisor.shutdown()
    print(json.dumps(report.to_dict(), indent=2))
    if report.failed and not args.allow_failures:
        return 1
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Rehydrate escrowed session bundles to local disk")
    parser.add_argument(
        "--allow-failures",
        action="store_true",
        help="Exit 0 even when some bundles could not be downloaded",
    )
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(_restore(args))
    except Exception as exc:  # noqa: BLE001 - show full operator-facing error context.
        print(f"restore_sessions failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
