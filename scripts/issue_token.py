"""Developer CLI for bearer tokens and rate-limit counters.

Usage::

    python -m scripts.issue_token <command> [options]

Commands:
    issue        Mint a signed token for a tenant/user
    peek         Show a tenant's request count in the current window
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Callable
from datetime import timedelta

from tenant_gate.auth.rate_limiter import FixedWindowRateLimiter
from tenant_gate.auth.tokens import issue_token
from tenant_gate.config import settings
from tenant_gate.errors import CounterStoreError
from tenant_gate.storage.counter_store import CounterStore, RedisCounterStore


def get_counter_store() -> CounterStore:
    """Counter store at the configured Redis URL."""
    return RedisCounterStore.from_url(settings.redis_url)


def issue(args: argparse.Namespace) -> None:
    """Print a token signed with the configured secret."""
    if not args.tenant:
        print("Tenant must not be empty", file=sys.stderr)
        sys.exit(1)

    token = issue_token(
        args.tenant,
        args.user,
        settings.jwt_secret.get_secret_value(),
        algorithm=settings.jwt_algorithm,
        ttl=timedelta(minutes=args.ttl_minutes),
    )
    print(token)


async def _peek(store: CounterStore, tenant: str) -> int:
    limiter = FixedWindowRateLimiter(
        store,
        limit=settings.rate_limit_threshold,
        window_seconds=settings.rate_limit_window_seconds,
    )
    try:
        return await limiter.peek(tenant)
    finally:
        await store.close()


def peek(args: argparse.Namespace) -> None:
    """Print the tenant's count for the current window."""
    try:
        count = asyncio.run(_peek(get_counter_store(), args.tenant))
    except CounterStoreError as exc:
        print(f"Counter store unavailable: {exc}", file=sys.stderr)
        sys.exit(1)

    print(f"{args.tenant}: {count}/{settings.rate_limit_threshold} in current window")


def main() -> None:
    """Parse arguments and dispatch to command handler."""
    parser = argparse.ArgumentParser(description="Token and rate-limit CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    # issue
    p = sub.add_parser("issue", help="Mint a signed bearer token")
    p.add_argument("--tenant", required=True, help="tenant_id claim")
    p.add_argument("--user", default="", help="user_id claim")
    p.add_argument("--ttl-minutes", type=int, default=60, help="Token lifetime")

    # peek
    p = sub.add_parser("peek", help="Show current window count for a tenant")
    p.add_argument("--tenant", required=True, help="Tenant id")

    args = parser.parse_args()
    commands: dict[str, Callable[[argparse.Namespace], None]] = {
        "issue": issue,
        "peek": peek,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
