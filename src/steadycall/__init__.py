"""
SteadyCall - resilience layer for calls to unreliable, rate-limited services.

Wraps remote operations (payment gateways, banking aggregators, market-data
feeds) with bounded retry, per-dependency circuit breakers and token-bucket
rate limiting, composed in a fixed, documented order.
"""

__version__ = "1.0.0"
