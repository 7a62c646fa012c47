"""
QueryGate

Uniform schema introspection and safe, cached, read-only query execution
over PostgreSQL, MySQL and MongoDB data sources.
"""

__version__ = "1.0.0"
