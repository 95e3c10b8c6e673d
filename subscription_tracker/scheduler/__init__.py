"""
Background scheduling for the subscription tracker.
"""

from .expiration_sweeper import ExpirationSweeper

__all__ = ["ExpirationSweeper"]
