#!/usr/bin/env python3
"""Push records that only exist in the local fallback vault to the remote store.

Records land in the local vault whenever the remote store was unreachable at
save time. Nothing reconciles the two sides automatically; run this once the
remote side is healthy again.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import replace
from pathlib import Path

from alcortex.config import get_settings
from alcortex.errors import PersistenceError, RemoteUnavailable
from alcortex.records import build_record_store


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Resync local-only Alcortex records to the remote store")
    parser.add_argument("--api-base-url", help="Records API base URL (overrides ALCORTEX_API_BASE_URL)")
    parser.add_argument("--s3-bucket", help="S3 bucket (overrides ALCORTEX_S3_BUCKET)")
    parser.add_argument("--local-dir", help="Local vault directory (overrides ALCORTEX_LOCAL_STORAGE_DIR)")
    parser.add_argument(
        "--prune-local",
        action="store_true",
        help="Delete each record from the local vault once the remote store has it",
    )
    parser.add_argument("--report-json", type=Path, help="Optional path for a JSON summary")
    return parser.parse_args()


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    overrides = {}
    if args.api_base_url:
        overrides["api_base_url"] = args.api_base_url
    if args.s3_bucket:
        overrides["s3_bucket"] = args.s3_bucket
    if args.local_dir:
        overrides["local_storage_dir"] = args.local_dir
    if overrides:
        settings = replace(settings, **overrides)

    store = build_record_store(settings)
    if store.remote_name is None:
        print("[resync] no remote store configured; set --api-base-url or --s3-bucket")
        return 2

    store.init()
    try:
        pushed = await store.resync(prune_local=args.prune_local)
    except RemoteUnavailable as exc:
        print(f"[resync] remote unavailable: {exc}")
        return 1
    except PersistenceError as exc:
        print(f"[resync] remote rejected a record: {exc}")
        return 1
    finally:
        await store.close()

    print(f"[resync] pushed {len(pushed)} record(s) to {store.remote_name}")
    for record_id in pushed:
        print(f"[resync]   {record_id}")

    if args.report_json:
        args.report_json.parent.mkdir(parents=True, exist_ok=True)
        report = {"remote": store.remote_name, "pushed": pushed, "pruned_local": args.prune_local}
        args.report_json.write_text(json.dumps(report, indent=2), encoding="utf-8")
        print(f"[resync] wrote JSON report: {args.report_json}")
    return 0


def main() -> int:
    args = parse_args()
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
