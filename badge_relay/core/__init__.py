"""
Core configuration, logging, database and error types.
"""
