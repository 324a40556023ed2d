#!/usr/bin/env python
"""
Run Sync Script
Command-line script for syncing integration data into metrics.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from kpi_sync.utils.logger import setup_logging, get_logger
from kpi_sync.integrations import INTEGRATION_TYPES
from kpi_sync.sync_pipeline import IntegrationNotFoundError, SyncError, run_sync


def main():
    """Main entry point for sync script."""
    parser = argparse.ArgumentParser(description='Sync integration data into dashboard metrics')
    parser.add_argument(
        'integration',
        choices=INTEGRATION_TYPES + ('all',),
        help='Integration to sync, or "all"'
    )
    
    args = parser.parse_args()
    
    setup_logging()
    logger = get_logger(__name__)
    
    targets = INTEGRATION_TYPES if args.integration == 'all' else (args.integration,)
    failed = False
    
    for integration_type in targets:
        try:
            result = run_sync(integration_type)
        except IntegrationNotFoundError:
            print(f"{integration_type}: not configured or not active, skipped")
            # Naming a single integration that is missing is an error; "all" skips it
            failed = failed or args.integration != 'all'
            continue
        except SyncError as e:
            logger.error(f"Sync failed for {integration_type}: {e}")
            print(f"\n{integration_type}: {e.message} (sync log {e.sync_log_id})")
            failed = True
            continue
        
        print(f"\n{'='*50}")
        print(f"Sync Complete: {integration_type}")
        print(f"{'='*50}")
        print(f"Sync Log ID: {result.sync_log_id}")
        print(f"Mappings: {result.mappings_total}")
        print(f"Records Fetched: {result.records_fetched}")
        print(f"Records Updated: {result.records_updated}")
        for mapping_id, error in result.failures:
            print(f"  Mapping {mapping_id} failed: {error}")
    
    if failed:
        sys.exit(1)


if __name__ == '__main__':
    main()
