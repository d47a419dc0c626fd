#!/usr/bin/env python3
"""Create a gateway account and print its TOTP enrollment details.

Usage:
    python scripts/create_account.py --login alice

    # Print the current code as well, to check the authenticator app agrees
    python scripts/create_account.py --login alice --show-code

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    SHARED_FS_ROOT: State directory for the memory store
    TOTP_ISSUER: Issuer label shown in authenticator apps
"""
from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

import qrcode


def render_qr(uri: str) -> None:
    qr = qrcode.QRCode(
        border=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
    )
    qr.add_data(uri)
    qr.make(fit=True)
    qr.print_ascii(out=sys.stdout, invert=True)


def create_account(login: str, dry_run: bool = False) -> dict:
    """Provision a TOTP secret and persist a new account.

    Returns:
        dict with account_id, login, secret, uri and status ('created',
        'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from gatewarden.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.store.get_account_by_login(login)
    if existing:
        return {"account_id": existing.id, "login": login, "status": "exists"}

    secret, uri = runtime.verifier.provision(login)
    if dry_run:
        return {"account_id": None, "login": login, "uri": uri, "status": "dry_run"}

    account = runtime.store.create_account(login, secret)
    return {
        "account_id": account.id,
        "login": login,
        "secret": secret,
        "uri": uri,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Create a gateway account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--login", required=True, help="Account login")
    parser.add_argument(
        "--no-qr",
        action="store_true",
        help="Skip rendering the enrollment URI as a terminal QR code",
    )
    parser.add_argument(
        "--show-code",
        action="store_true",
        help="Print the code valid right now for a quick authenticator check",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for Postgres)")

    try:
        result = create_account(args.login, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "exists":
        print(f"Error: account {args.login} already exists (id: {result['account_id']})")
        sys.exit(1)
    if result["status"] == "dry_run":
        print(f"[DRY RUN] Would create account: {args.login}")
        return

    print(f"Account {result['login']} created (id: {result['account_id']})")
    print(f"  TOTP Secret: {result['secret']}")
    print(f"  Enrollment URI: {result['uri']}")
    if args.show_code:
        from gatewarden.service.totp import code_at

        print(f"  Current code: {code_at(result['secret'], time.time())}")
    if not args.no_qr:
        print("\nScan this QR code with your authenticator app:\n")
        render_qr(result["uri"])
    print("\nStore the TOTP secret somewhere safe; it is not shown again.")


if __name__ == "__main__":
    main()
