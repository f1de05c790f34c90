"""
Event Inventory Sync Engine

Mapping resolution between storefront products and ticketing/POS
identifiers, and idempotent aggregation of sales from every channel.
"""

__version__ = "1.0.0"
