"""
Client-side resilience layer for the POS front end.
"""

__version__ = "0.1.0"
