#!/usr/bin/env python3
# backend/init_db.py
"""
Create all tables directly from the ORM models.

For local experiments; deployed databases are migrated with Alembic.

    python backend/init_db.py
"""
import logging
import sys
from pathlib import Path

# Make the 'coinfolio' package importable when run as a script
backend_dir = Path(__file__).resolve().parent
sys.path.insert(0, str(backend_dir))

from coinfolio.database import engine
from coinfolio.models import Base
from coinfolio.utils.logging import setup_logging

logger = logging.getLogger(__name__)


def init_db() -> None:
    """Create every table that does not exist yet."""
    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    logger.info(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")


if __name__ == "__main__":
    setup_logging()
    init_db()
