"""
Persistence package for the Stickers Service (PostgreSQL via asyncpg).
"""
