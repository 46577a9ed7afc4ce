"""
HTTP API for the scan analysis pipeline.
"""

from .server import create_app

__all__ = ['create_app']
