"""
Users Service package for the P4rsec platform.

This package manages user records behind a read-through Redis cache. It
provides:

- app.main: HTTP surface for user CRUD, stats and health.
- app.models: User record, request/response models and cache codecs.
- app.repository: Cache-backed repository combining store and cache.
- app.persistence: PostgreSQL record store (source of truth).
- app.cache: Redis key-value cache and key enumeration strategies.
- app.ratelimit: Per-client fixed-window request limiting.

Guidelines:
- PostgreSQL is authoritative; the cache may be cold, stale-free or absent.
- Cache failures degrade latency, never correctness.
- Deletes are soft; inactive rows are invisible to every read.
"""
