"""
Cache package for the Stickers Service.

Provides a Redis-backed cache of the sticker sets each user owns, with a
hash per user for the full snapshot and a set per owned sticker set for
membership checks.
"""
