"""
Shared infrastructure: configuration-driven logging, database, cache,
rate limiting and domain exceptions.
"""

from dnc_engine.shared.database import Base, DatabaseManager
from dnc_engine.shared.logging import get_logger

__all__ = ["Base", "DatabaseManager", "get_logger"]
