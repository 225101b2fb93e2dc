from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from pairlink.core.config import get_settings
from pairlink.services.registry import SessionRegistry
from pairlink.services.supervisor import SESSIONS_FILENAME


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="List registered sessions and their escrow tokens")
    parser.add_argument("--data-dir", default=None, help="Override DATA_DIR")
    parser.add_argument("--json", action="store_true", help="Print records as a JSON array")
    return parser


async def _list_sessions(args: argparse.Namespace) -> int:
    data_dir = Path(args.data_dir) if args.data_dir else get_settings().data_path
    registry = SessionRegistry(data_dir / SESSIONS_FILENAME)
    records = list(await registry.list())
    if args.json:
        print(json.dumps([record.to_dict() for record in records], indent=2))
        return 0
    print("tenant_id\tcreated_at\tescrow_token")
    for record in records:
        print(f"{record.tenant_id}\t{record.created_at}\t{record.escrow_token}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_list_sessions(args))
    except Exception as exc:  # noqa: BLE001 - show full operator-facing error context.
        print(f"list_sessions failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
