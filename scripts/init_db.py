#!/usr/bin/env python
"""
Initialize Database Script
Creates the pillar, metric and integration tables.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from kpi_sync.utils.logger import setup_logging, get_logger
from kpi_sync.database.connection import get_db


def main():
    """Main entry point for database initialization."""
    parser = argparse.ArgumentParser(description='Create the KPI dashboard schema')
    parser.add_argument(
        '--drop',
        action='store_true',
        help='Drop existing tables first, deleting all metric history (DANGEROUS)'
    )

    args = parser.parse_args()

    setup_logging()
    logger = get_logger(__name__)

    db = get_db()
    if not db.check_connection():
        print("Error: Cannot connect to database")
        sys.exit(1)

    if args.drop:
        confirm = input("Drop every table, including metric history and sync logs? (yes/no): ")
        if confirm.lower() != 'yes':
            print("Cancelled")
            sys.exit(0)

    try:
        tables = db.create_tables(drop_first=args.drop)
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        print(f"\nError: {e}")
        sys.exit(1)

    print(f"\n{'='*50}")
    print("Database Ready")
    print(f"{'='*50}")
    for table in tables:
        print(f"  - {table}")


if __name__ == '__main__':
    main()
