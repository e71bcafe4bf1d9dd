#!/usr/bin/env python3
"""Database migration script - creates all tables."""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from custodex.config import get_settings
from custodex.ledger.database import close_db, create_engine, init_db


async def main():
    """Run database migrations."""
    settings = get_settings()
    engine = create_engine(settings)

    print(f"Database URL: {settings.database_url}")
    print("Creating database tables...")

    try:
        await init_db(engine)
        print("Database tables created successfully!")
    except Exception as e:
        print(f"Error creating tables: {e}")
        raise
    finally:
        await close_db(engine)


if __name__ == "__main__":
    asyncio.run(main())
