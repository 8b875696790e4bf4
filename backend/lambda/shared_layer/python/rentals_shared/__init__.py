"""rentals_shared — Shared content store for the rentals site Lambdas.

Provides:
    - DynamoDB-backed KV client (values, string sets, counters, TTL)
    - Record codec with per-kind required-field validation
    - Index maintainer (id sets, attribute membership sets, counters)
    - Generic content store plus blog and fleet facades
    - Scheduled publishing trigger
    - Bearer JWT authentication and HTTP response helpers
    - Read-only payment intent lookups
"""

__version__ = "1.0.0"
