"""Shipping quote-to-booking pricing pipeline."""
__version__ = "1.0.0"
