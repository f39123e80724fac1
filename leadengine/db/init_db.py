"""
Initialize database tables
Run this once to create tables
"""

import asyncio

from leadengine.config import get_settings
from leadengine.db.database import init_db
from leadengine.logging_config import setup_logging


if __name__ == "__main__":
    setup_logging(get_settings().log_level)
    asyncio.run(init_db())
