"""
utils/ - Shared helpers
=======================
Logging, error taxonomy, result shapes, money and time helpers.
"""
