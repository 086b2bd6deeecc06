"""
drip·mate backend package.

Provides a FastAPI application for whitelist-gated registration,
device-bound token auth, per-user coffee records and coffee bag analysis,
with storage, mail and rate-limit abstractions that have in-memory
implementations for local runs and tests.
"""

__version__ = "5.2.0"
