"""
Database module - ORM models, sessions and migrations.
"""
