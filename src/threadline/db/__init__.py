"""
Database engine, sessions and repositories.
"""
