"""
Shopify Margin Sync.

Multi-tenant catalog and order sync with point-in-time cost basis and
order margin reporting.
"""

__version__ = "1.0.0"
