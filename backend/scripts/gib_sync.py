#!/usr/bin/env python3
"""
GIB Sync Script - Entry point for cron jobs

Usage:
    python scripts/gib_sync.py --triggered-by cron
    python scripts/gib_sync.py --ensure-schema

Environment:
    DATABASE_URL: Required - PostgreSQL connection string
    GIB_SYNC_ENABLED: Optional - 'true' (default) or 'false' to disable
    GIB_PK_LIST_URL / GIB_GB_LIST_URL: Optional - origin list ZIP URLs

Exit Codes:
    0: Success
    1: Failure
    2: Disabled via kill switch
    3: Partial (lock held elsewhere, removal guard veto, archive warnings)
"""

import sys
import os

# Add backend to path for imports
backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if backend_dir not in sys.path:
    sys.path.insert(0, backend_dir)

from services.gib_sync_engine import main

if __name__ == '__main__':
    main()
