"""
Normalized data model and currency conversion.
"""
