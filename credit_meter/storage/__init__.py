"""
Storage layer: SQLite handle, models and the credit repository.
"""
