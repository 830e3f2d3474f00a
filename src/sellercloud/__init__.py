"""
SellerCloud

Multi-marketplace data aggregation for sellers on Yandex Market, Uzum Market,
Wildberries and Ozon: normalized products and orders, a per-user offline
snapshot cache and analytics computed from it.
"""

__version__ = "1.0.0"
__author__ = "SellerCloud Team"
