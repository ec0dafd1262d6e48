#!/usr/bin/env python3
"""Re-key or delete stored chats whose keys are not valid phone JIDs.

Usage:
    python scripts/clean_invalid_chats.py [--tenant-id ID] [--dry-run]

Run it with the API stopped; a running sync loop would write the old keys back.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy.exc import SQLAlchemyError

from zapflow.services.chat_cleanup import clean_invalid_chats
from zapflow.services.storage_service import StorageService


def main():
    parser = argparse.ArgumentParser(description="Clean stored chats with invalid keys")
    parser.add_argument(
        "--tenant-id",
        type=str,
        default=None,
        help="Tenant to clean (default: DEFAULT_TENANT_ID)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report changes without writing them",
    )

    args = parser.parse_args()

    storage = StorageService(tenant_id=args.tenant_id)
    print(f"Scanning chats for tenant {storage.tenant_id}...")

    try:
        report = clean_invalid_chats(storage, dry_run=args.dry_run)
    except SQLAlchemyError as e:
        print(f"✗ Error cleaning chats: {e}", file=sys.stderr)
        sys.exit(1)

    for old_key, new_key in report.rekeyed:
        print(f"  re-keyed {old_key} -> {new_key}")
    for key in report.deleted:
        print(f"  deleted {key}")

    suffix = " (dry run)" if args.dry_run else ""
    print(f"✓ Scanned {report.scanned}, invalid {report.invalid}, "
          f"re-keyed {len(report.rekeyed)}, deleted {len(report.deleted)}{suffix}")


if __name__ == "__main__":
    main()
