"""
Shared platform plumbing: settings, logging, database sessions and Redis.
"""
