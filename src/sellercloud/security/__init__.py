"""
Security utilities for SellerCloud.
"""

from .encryption import CredentialEncryptor

__all__ = ["CredentialEncryptor"]
