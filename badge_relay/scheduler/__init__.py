"""
Service wiring and process entry point.
"""
