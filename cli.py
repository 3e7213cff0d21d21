"""Command-line entry point for the creative library and duplication tools.

Everything here goes through the same AppContext the API uses, so the
ledger, the circuit breakers and the batch job store behave identically.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import mimetypes
import os
import shutil
import sys
import textwrap
import time
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from circuit_breaker import CircuitOpenError
from context import AppContext
from duplication import DuplicationOptions
from meta_client import MetaAPIError, user_message
from uploads import IntakeFile, summarize


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="cli.py",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=textwrap.dedent(
            """
            Meta creative sync & duplication tool

            Examples:
              # 1) Validate token
              python cli.py whoami

              # 2) Upload creatives to an ad account (deduplicated against the library)
              python cli.py upload --account act_123 ./hero.jpg ./promo.mp4

              # 3) Duplicate an ad set into a campaign
              python cli.py duplicate-adset --source <ADSET_ID> --target-campaign <CAMPAIGN_ID>

              # 4) Duplicate a campaign into another account
              python cli.py duplicate-campaign --source <CAMPAIGN_ID> --target-account act_456

              # 5) Check an async batch
              python cli.py batch-status --id <TRACKING_ID> --fetch-results
            """
        ),
    )

    p.add_argument("--env", default=".env", help="Path to .env file (default: .env).")
    p.add_argument("--log-level", default=(os.getenv("LOG_LEVEL") or "WARNING").strip())

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("whoami", help="GET /me?fields=id,name (validates token).")

    sp = sub.add_parser("list-adaccounts", help="List ad accounts visible to the token.")
    sp.add_argument("--limit", type=int, default=50)

    sp = sub.add_parser("upload", help="Upload local images/videos to an ad account.")
    sp.add_argument("--account", required=True)
    sp.add_argument("paths", nargs="+")

    sp = sub.add_parser("library", help="List creatives in the local library.")
    sp.add_argument("--limit", type=int, default=50)
    sp.add_argument("--query")

    sp = sub.add_parser("duplicate-adset", help="Duplicate an ad set (with its ads) into a campaign.")
    sp.add_argument("--source", required=True)
    sp.add_argument("--target-campaign", required=True)
    sp.add_argument("--shallow", action="store_true", help="Copy the ad set only, not its ads.")
    sp.add_argument("--name")

    sp = sub.add_parser("duplicate-campaign", help="Duplicate a campaign, optionally into another account.")
    sp.add_argument("--source", required=True)
    sp.add_argument("--target-account")
    sp.add_argument("--shallow", action="store_true", help="Copy the campaign shell only.")
    sp.add_argument("--name")

    sp = sub.add_parser("bulk-copy", help="Deep-copy several campaigns in one synchronous batch.")
    sp.add_argument("--target-account")
    sp.add_argument("campaign_ids", nargs="+")

    sp = sub.add_parser("batch-status", help="Status of an async batch request.")
    sp.add_argument("--id", required=True)
    sp.add_argument("--fetch-results", action="store_true")

    sub.add_parser("circuit-breakers", help="Show circuit breaker states for this process.")

    return p


def _stage_copies(paths: List[str], upload_dir: str) -> List[IntakeFile]:
    """Copy local files into the temp dir; intake moves or discards the copy, never the original."""
    items: List[IntakeFile] = []
    for raw in paths:
        src = Path(raw)
        dest = Path(upload_dir) / f"{int(time.time() * 1000)}-{src.name}"
        shutil.copy2(src, dest)
        items.append(IntakeFile(str(dest), src.name, mimetypes.guess_type(src.name)[0]))
    return items


async def _run(ctx: AppContext, args: argparse.Namespace):
    if args.cmd == "whoami":
        return await ctx.facebook(ctx.client.whoami)

    if args.cmd == "list-adaccounts":
        return await ctx.facebook(ctx.client.list_adaccounts, limit=args.limit)

    if args.cmd == "upload":
        items = await asyncio.to_thread(_stage_copies, args.paths, ctx.settings.upload_dir)
        results = await ctx.pipeline.process_files(items, args.account, ctx.access_token)
        return {"summary": summarize(results), "results": results}

    if args.cmd == "library":
        return await asyncio.to_thread(ctx.store.list_creatives, limit=args.limit, query=args.query)

    if args.cmd == "duplicate-adset":
        options = DuplicationOptions(deep_copy=not args.shallow, new_name=args.name)
        result = await ctx.duplicator.duplicate_ad_set(args.source, args.target_campaign, options)
        return result.to_dict()

    if args.cmd == "duplicate-campaign":
        options = DuplicationOptions(deep_copy=not args.shallow, new_name=args.name)
        result = await ctx.duplicator.duplicate_campaign(args.source, args.target_account, options)
        return result.to_dict()

    if args.cmd == "bulk-copy":
        return await ctx.duplicator.bulk_copy_campaigns(args.campaign_ids, args.target_account)

    if args.cmd == "batch-status":
        return await ctx.duplicator.get_batch_status(args.id, fetch_results=args.fetch_results)

    if args.cmd == "circuit-breakers":
        return ctx.breakers.get_all_states()

    raise ValueError(f"Unknown command: {args.cmd}")


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv or sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=str(args.log_level).upper(), format="%(levelname)s %(name)s: %(message)s")

    env_path = Path(args.env)
    if env_path.exists():
        load_dotenv(env_path, override=False)

    try:
        ctx = AppContext.from_env()
    except (RuntimeError, ValueError) as e:
        print(f"[CONFIG ERROR] {e}", file=sys.stderr)
        return 2

    try:
        out = asyncio.run(_run(ctx, args))
        print(json.dumps(out, indent=2, ensure_ascii=False, default=str))
        return 0
    except MetaAPIError as e:
        print("\n[MetaAPIError]", user_message(e), file=sys.stderr)
        if e.error:
            print(json.dumps(e.error, indent=2), file=sys.stderr)
        return 1
    except CircuitOpenError as e:
        print("\n[CircuitOpen]", e, file=sys.stderr)
        return 1
    except Exception as e:
        print("\n[ERROR]", e, file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
