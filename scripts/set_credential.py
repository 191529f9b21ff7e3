#!/usr/bin/env python3
"""Enroll or replace the password credential for a subject.

Usage:
    # Using environment variables:
    AUTH_SUBJECT=alice AUTH_PASSWORD='Secr3t!' STATE_PATH=/var/lib/authcore python scripts/set_credential.py

    # Or with command line args:
    python scripts/set_credential.py --subject alice --password 'Secr3t!'

    # Print a hash without touching the store:
    python scripts/set_credential.py --password 'Secr3t!' --hash-only

Environment Variables:
    AUTH_SUBJECT: Subject id to enroll
    AUTH_PASSWORD: Password to hash
    STATE_PATH: Directory holding credentials.json (required to persist)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def set_credential(subject: str, password: str, dry_run: bool = False) -> dict:
    """Create or replace the credential for ``subject``.

    Returns:
        dict with subject_id, algorithm and status ('created', 'updated' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.find_credential(subject)
    algorithm = runtime.hasher.algorithm.value

    if dry_run:
        action = "replace" if existing else "create"
        print(f"[DRY RUN] Would {action} credential for {subject} using {algorithm}")
        return {"subject_id": subject, "algorithm": algorithm, "status": "dry_run"}

    await runtime.auth.enroll(subject, password)
    status = "updated" if existing else "created"
    if runtime.settings.state_path is None:
        print("Warning: STATE_PATH is not set; the credential lives only in this process")
    print(f"Credential {status} for {subject} ({algorithm})")
    return {"subject_id": subject, "algorithm": algorithm, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Enroll a password credential for authcore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--subject",
        default=os.environ.get("AUTH_SUBJECT"),
        help="Subject id (or set AUTH_SUBJECT env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("AUTH_PASSWORD"),
        help="Password (or set AUTH_PASSWORD env var)",
    )
    parser.add_argument(
        "--hash-only",
        action="store_true",
        help="Print the encoded hash and exit without storing it",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.password:
        print("Error: --password or AUTH_PASSWORD environment variable required")
        sys.exit(1)

    if args.hash_only:
        from authcore.config import get_settings
        from authcore.service.errors import InvalidInputError
        from authcore.service.passwords import PasswordHasher

        hasher = PasswordHasher.from_settings(get_settings())
        try:
            print(hasher.hash(args.password))
        except InvalidInputError as exc:
            print(f"Error: {exc.message}")
            sys.exit(1)
        return

    if not args.subject:
        print("Error: --subject or AUTH_SUBJECT environment variable required")
        sys.exit(1)

    from authcore.service.errors import ServiceError

    try:
        result = asyncio.run(set_credential(args.subject, args.password, args.dry_run))
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] in ("created", "updated"):
        from authcore.service.runtime import get_runtime

        # Flush persisted state before exit
        asyncio.run(get_runtime().close())


if __name__ == "__main__":
    main()
