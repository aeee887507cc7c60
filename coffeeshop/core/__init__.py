"""
Core: settings, logging, errors, metrics and database lifecycle.
"""
