"""
Hive Subscription Tracker

A service that turns Hive transfers into time-bounded subscriptions:
- Live monitoring of payment accounts with automatic reconnection
- Idempotent subscription ledger
- Periodic deactivation of lapsed subscriptions
- Health and status HTTP endpoints
"""

__version__ = "0.1.0"
