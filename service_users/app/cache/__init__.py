"""
Cache package for Users Service.

Provides a Redis-backed byte cache with per-key expiry and pluggable
strategies for enumerating keys during bulk invalidation.
"""
