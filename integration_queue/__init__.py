"""
Integration Job Queue

A durable, idempotent queue for inbound webhook events and outbound postings
to external bookkeeping systems. Provides exactly-once-in-effect processing on
top of at-least-once delivery using conditional writes, leases, retry/backoff
and a dead-letter state.
"""

__version__ = "1.0.0"
