#!/usr/bin/env python3
"""
Create the payment_events table and its indexes.

Usage:
    python scripts/init_db.py

Environment:
    DATABASE_URL: Database connection string
"""

import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.db_utils import check_db_connection
from app.db import create_db_and_tables, engine


def main() -> int:
    print(f"Creating tables on {engine.url.render_as_string(hide_password=True)}...")
    if not check_db_connection(engine):
        print("Database is not reachable, check DATABASE_URL")
        return 1

    create_db_and_tables()
    print("Tables created successfully: payment_events (unique event_id, payment_id/received_at index)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
