"""
Seed script for the known-merchant catalog.
Run with: python postgres_migration/seed_known_merchants.py (from the backend directory)

Entries are upserted by name, so the script can be re-run after the bundled
catalog changes.
"""

import sys
from pathlib import Path

# Add parent directory to path so we can import subradar modules
# This allows running from either backend/ or backend/postgres_migration/
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from subradar.database import engine, SessionLocal, Base
from subradar.models import KnownMerchant
from subradar.services.merchant_catalog import DEFAULT_KNOWN_MERCHANTS, upsert_known_merchants


def seed():
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        print(f"Seeding {len(DEFAULT_KNOWN_MERCHANTS)} known merchants...")
        stats = upsert_known_merchants(db, DEFAULT_KNOWN_MERCHANTS)

        print(f"✓ Created: {stats['created']}")
        print(f"✓ Updated: {stats['updated']}")
        if stats["skipped"]:
            print(f"⚠ Skipped: {stats['skipped']}")

        print("\n✅ Seeding complete!")
        print(f"Total known merchants: {db.query(KnownMerchant).count()}")
    finally:
        db.close()


if __name__ == "__main__":
    seed()
