"""
Core package — cross-cutting concerns.

Modules:
    config        — environment variables & settings
    logging       — structured JSON logging
    errors        — exception hierarchy & handlers
    health        — health check aggregation
    cache         — two-level (memory + Redis) feed cache
    cancellation  — cooperative cancellation tokens for in-flight fetches
"""
