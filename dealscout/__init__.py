"""
DealScout - adaptive extraction pipeline for business-for-sale listings.
"""

__version__ = "0.3.0"
