"""
HTTP surface of the subscription tracker.
"""
