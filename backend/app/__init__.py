"""Subscription Service Backend Application.

Plans, checkout with promo codes, subscription lifecycle, monthly usage
metering and billing history for a messaging platform.

Modules:
    - core: Configuration, database, cache, security, Celery setup
    - modules.billing: Subscriptions and usage metering
"""

__version__ = "0.1.0"
