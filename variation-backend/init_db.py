#!/usr/bin/env python3
"""
Database initialization script.
Creates tables if they don't exist; also called from the app lifespan because
the default database lives in process memory.
"""

import sys
import logging
from database import engine, Base
import models  # noqa: F401  registers Job and Variation on Base.metadata


def init_database(bind=engine):
    """Initialize the database by creating all tables."""
    logging.info("Creating database tables...")
    Base.metadata.create_all(bind=bind)
    logging.info("✅ Database tables ready")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    try:
        init_database()
    except Exception as e:
        logging.error(f"❌ Error creating database tables: {e}")
        sys.exit(1)
