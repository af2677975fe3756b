#!/usr/bin/env python3
"""
Grant bonus messages or inspect an account's monthly quota.

Usage:
    # Grant 100 extra WhatsApp messages for the current month
    python grant_messages.py --account 42 --channel chat --messages 100

    # Grant 20 extra SMS messages
    python grant_messages.py --account 42 --channel text --messages 20

    # Show usage for the current month
    python grant_messages.py --account 42 --show
"""

import argparse
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rsvp_dispatch.db.session import session_scope
from rsvp_dispatch.services.quota_service import add_bonus, get_usage_summary


def grant_messages(account_id: int, channel: str, messages: int) -> bool:
    """Grant bonus messages to an account for the current period"""
    with session_scope() as db:
        try:
            result = add_bonus(account_id, channel, messages, db)
        except ValueError as e:
            print(f"❌ {e}")
            db.rollback()
            return False

    print(f"✅ Granted {messages} {channel} messages to account {account_id}")
    remaining = result["remaining"]
    print(f"   Remaining this month: {'unlimited' if remaining < 0 else remaining}")
    return True


def show_usage(account_id: int) -> bool:
    """Print the account's usage for the current period"""
    with session_scope() as db:
        summary = get_usage_summary(account_id, db)
    if not summary:
        print(f"❌ Account not found: {account_id}")
        return False

    print(f"Account {account_id} ({summary['plan_tier']}), period from {summary['period_start']}")
    for channel, usage in summary["channels"].items():
        if usage["unlimited"]:
            print(f"   {channel}: {usage['sent']} sent (unlimited)")
        else:
            print(
                f"   {channel}: {usage['sent']} sent of {usage['limit']} + {usage['bonus']} bonus, "
                f"{usage['remaining']} remaining"
            )
    return True


def main():
    parser = argparse.ArgumentParser(description="Grant bonus messages or inspect message quota")
    parser.add_argument("--account", type=int, required=True, help="Account id")
    parser.add_argument("--channel", choices=["chat", "text"], help="Channel to grant messages for")
    parser.add_argument("--messages", type=int, help="Number of bonus messages to grant")
    parser.add_argument("--show", action="store_true", help="Show current usage")

    args = parser.parse_args()

    if args.show:
        ok = show_usage(args.account)
    elif args.channel and args.messages:
        ok = grant_messages(args.account, args.channel, args.messages)
    else:
        parser.error("either --show or both --channel and --messages are required")

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
