"""
basecore - shared runtime plumbing (settings, logging, database sessions).

Imported by the engines package and by every app entry point.
"""
