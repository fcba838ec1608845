#!/usr/bin/env python3
"""
Dev helper: trigger an email sync on the local Tally backend.

Usage
-----
# Sync one user with their Supabase access token
python scripts/trigger_email_sync.py --token <JWT>

# Only show whether sync is configured and when it last ran
python scripts/trigger_email_sync.py --token <JWT> --status

# Run the scheduled job for every enabled user (uses CRON_SECRET)
python scripts/trigger_email_sync.py --cron

# Target a different backend URL
python scripts/trigger_email_sync.py --cron --url http://staging.example.com

Environment / .env
------------------
CRON_SECRET         Shared secret for --cron.
TALLY_ACCESS_TOKEN  Default for --token.

Variables are read from .env in the project root or backend/ if present.
"""

import argparse
import json
import os
import sys
import textwrap
from pathlib import Path

import httpx
from dotenv import load_dotenv


def _print_response(response: httpx.Response) -> None:
    status = response.status_code
    symbol = "OK" if status == 200 else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    try:
        print(json.dumps(response.json(), indent=2, ensure_ascii=False))
    except ValueError:
        print(response.text)


def main() -> int:
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="trigger_email_sync.py",
        description="Trigger an email sync on the Tally backend.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python scripts/trigger_email_sync.py --token eyJhbGciOi...
              python scripts/trigger_email_sync.py --token eyJhbGciOi... --status
              python scripts/trigger_email_sync.py --cron
        """),
    )
    parser.add_argument(
        "--url",
        default="http://localhost:8000",
        help="Backend base URL (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--token",
        default=os.getenv("TALLY_ACCESS_TOKEN"),
        help="Supabase access token of the user to sync",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="GET the sync status instead of running a sync",
    )
    parser.add_argument(
        "--cron",
        action="store_true",
        help="Call the scheduled job endpoint with CRON_SECRET",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=120.0,
        help="Request timeout in seconds (default: 120)",
    )
    args = parser.parse_args()

    base = args.url.rstrip("/")
    if args.cron:
        secret = os.getenv("CRON_SECRET")
        if not secret:
            print("ERROR: CRON_SECRET is not set.", file=sys.stderr)
            return 1
        method, endpoint = "POST", f"{base}/api/cron/email-sync"
        headers = {"X-Cron-Secret": secret}
    else:
        if not args.token:
            print(
                "ERROR: No access token. Pass --token or set TALLY_ACCESS_TOKEN.",
                file=sys.stderr,
            )
            return 1
        method = "GET" if args.status else "POST"
        endpoint = f"{base}/api/email/sync"
        headers = {"Authorization": f"Bearer {args.token}"}

    print(f"{method} {endpoint}")

    try:
        response = httpx.request(method, endpoint, headers=headers, timeout=args.timeout)
    except httpx.ConnectError:
        print(
            f"\nERROR: Could not connect to {endpoint}\n"
            "Is the backend running? Start it with:\n"
            "  cd backend && uvicorn app.main:app --reload",
            file=sys.stderr,
        )
        return 1
    except httpx.HTTPError as exc:
        print(f"\nERROR: {exc}", file=sys.stderr)
        return 1

    _print_response(response)
    return 0 if response.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
