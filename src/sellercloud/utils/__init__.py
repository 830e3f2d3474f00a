"""
Logging, configuration, errors and retry helpers.
"""
