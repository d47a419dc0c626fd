#!/usr/bin/env python3
"""Add permanent origin IP trust outside the login flow.

Usage:
    python scripts/trust_ip.py 203.0.113.7
    python scripts/trust_ip.py 203.0.113.7 --check
"""
from __future__ import annotations

import argparse
import ipaddress
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main():
    parser = argparse.ArgumentParser(
        description="Permanently trust an origin IP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("ip", help="IPv4 or IPv6 address")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only report whether the address is currently trusted",
    )
    args = parser.parse_args()

    try:
        ip = str(ipaddress.ip_address(args.ip))
    except ValueError:
        print(f"Error: {args.ip!r} is not a valid IP address")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")

    from gatewarden.service.runtime import get_runtime

    try:
        ip_trust = get_runtime().ip_trust
        if args.check:
            state = "trusted" if ip_trust.is_trusted(ip) else "not trusted"
            print(f"{ip}: {state}")
            return
        record = ip_trust.trust_permanently(ip)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"{record.ip} is now permanently trusted")


if __name__ == "__main__":
    main()
