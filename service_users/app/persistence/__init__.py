"""
Persistence package for Users Service.

PostgreSQL access through an asyncpg pool. The users table is created on
start if it does not exist.
"""
