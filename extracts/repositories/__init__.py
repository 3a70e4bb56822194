"""Data access layer (asyncpg)."""
