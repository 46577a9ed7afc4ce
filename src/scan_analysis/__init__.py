"""
Scan analysis orchestration service.

Admits uploaded scans for AI inference, tracks them through their status
lifecycle and records the outcome of each analysis run.
"""

__version__ = "1.0.0"
