"""Rate limit record store adapters.

The limiter depends only on ``AbstractRecordStore`` so the process-local
backend used in development and tests can be swapped for the hosted
``rate_limits`` table without touching the decision logic.
"""
