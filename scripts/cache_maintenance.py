#!/usr/bin/env python3
"""Inspect and repair the shared Redis cache from the command line.

Usage:
    # Key counts per namespace and memory usage:
    python scripts/cache_maintenance.py stats

    # Delete keys stored without a TTL:
    python scripts/cache_maintenance.py cleanup

    # Invalidate a pattern or a whole namespace:
    python scripts/cache_maintenance.py invalidate --pattern "search:*"
    python scripts/cache_maintenance.py invalidate --namespace trending

    # Clear a rate-limit counter:
    python scripts/cache_maintenance.py reset-limit --route-class auth_login --bucket <bucket>

Environment Variables:
    REDIS_URL: Redis connection string (default redis://localhost:6379/0)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_command(args: argparse.Namespace) -> dict:
    # Import here so REDIS_URL and friends are read after argument parsing
    from listeners.service.cache import Namespace
    from listeners.service.ratelimit import RouteClass
    from listeners.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if args.command == "stats":
            return await runtime.cache.get_stats()
        if args.command == "cleanup":
            return {"cleaned": await runtime.cache.cleanup_orphaned_keys()}
        if args.command == "invalidate":
            if args.namespace:
                deleted = await runtime.cache.clear_namespace(Namespace(args.namespace))
                return {"namespace": args.namespace, "deleted": deleted}
            return {"pattern": args.pattern, "deleted": await runtime.cache.delete_by_pattern(args.pattern)}
        if args.command == "reset-limit":
            reset = await runtime.rate_limiter.reset(RouteClass(args.route_class), args.bucket)
            return {"routeClass": args.route_class, "bucket": args.bucket, "reset": reset}
        raise ValueError(f"unknown command: {args.command}")
    finally:
        await runtime.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Maintenance commands for the Listeners cache and rate limiter",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("stats", help="Show key counts per namespace")
    commands.add_parser("cleanup", help="Delete keys without a TTL")

    invalidate = commands.add_parser("invalidate", help="Delete cached entries")
    target = invalidate.add_mutually_exclusive_group(required=True)
    target.add_argument("--pattern", help="Glob pattern, e.g. 'song:42:*'")
    target.add_argument(
        "--namespace",
        choices=[
            "user", "song", "playlist", "trending", "popular", "search", "session",
            "recently_played", "spotify", "s3_check", "db_songs", "audio", "preload",
            "metadata",
        ],
        help="Clear one namespace",
    )

    reset = commands.add_parser("reset-limit", help="Reset one rate-limit counter")
    reset.add_argument(
        "--route-class",
        required=True,
        choices=[
            "strict", "auth", "auth_login", "auth_oauth_callback", "api", "search",
            "upload", "login_progressive",
        ],
    )
    reset.add_argument("--bucket", required=True, help="Client fingerprint or account bucket")
    return parser


def main():
    args = build_parser().parse_args()

    if args.command == "invalidate" and args.pattern and args.pattern.strip() == "*":
        print("Error: refusing to invalidate every key; use a narrower pattern")
        sys.exit(1)

    try:
        result = asyncio.run(run_command(args))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))
    if "error" in result:
        sys.exit(2)


if __name__ == "__main__":
    main()
