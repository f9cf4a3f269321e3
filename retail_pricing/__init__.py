"""
retail_pricing: promotion-aware pricing, checkout freezing and
discount-reclaiming refunds for a retail back office.
"""

__version__ = "0.1.0"
