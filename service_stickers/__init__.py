"""
Stickers Service for the ChatRoom backend.
"""
