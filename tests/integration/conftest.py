"""
Pytest configuration for API integration tests.

The API runs against an in-memory SQLite database seeded with the bundled
catalog. Environment defaults are set before any application import.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("SYSTEM_PLAYER_ID", "0")
