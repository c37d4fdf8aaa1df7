"""Market data instruments and subscriptions."""
