"""Application modules.

- billing: Plan catalog, promo codes, subscriptions, usage metering and
  the transaction log
"""
