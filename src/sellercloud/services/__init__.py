"""
Credential store, fetch gateway, snapshot store and analytics.
"""
