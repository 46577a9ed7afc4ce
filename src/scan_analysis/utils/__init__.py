"""
Shared utility functions for the scan analysis service.
"""

from .database import DatabaseConfig, DatabaseManager, db_manager

__all__ = [
    'DatabaseConfig',
    'DatabaseManager',
    'db_manager',
]
