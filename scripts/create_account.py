from __future__ import annotations

import argparse
import asyncio
from datetime import datetime
import sys

from chatgate.core.config import get_settings
from chatgate.domain.accounts import SUBSCRIPTION_TIERS, TIER_FREE
from chatgate.persistence.db import dispose_engine
from chatgate.services.accounts import AccountStore


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit so provisioning is reproducible.
    parser = argparse.ArgumentParser(description="Create an account record")
    parser.add_argument("--account-id", required=True, help="Identity provider subject (uid)")
    parser.add_argument("--tier", default=TIER_FREE, choices=sorted(SUBSCRIPTION_TIERS))
    parser.add_argument("--free-messages", type=int, default=None, help="Initial free message allowance")
    parser.add_argument("--expiry", default=None, help="Pro expiry as an ISO-8601 timestamp")
    parser.add_argument("--push-token", default=None, help="Device push token")
    return parser


async def _create_account(args: argparse.Namespace) -> int:
    free_messages = args.free_messages
    if free_messages is None:
        free_messages = get_settings().free_reset_value
    expiry = datetime.fromisoformat(args.expiry) if args.expiry else None
    try:
        record = await AccountStore().create(
            args.account_id,
            free_messages_remaining=free_messages,
            subscription_tier=args.tier,
            subscription_expiry=expiry,
            push_token=args.push_token,
        )
    finally:
        await dispose_engine()

    print("Account created:")
    print(f"  account_id: {record.account_id}")
    print(f"  tier: {record.subscription_tier}")
    print(f"  free_messages_remaining: {record.free_messages_remaining}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_account(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_account failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
