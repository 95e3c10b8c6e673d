"""
API response schemas.
"""
