"""
Core modules for Craft Ledger.

This package contains pricing, cost calculation, the balance ledger,
infrastructure metering and top-up expiration.
"""
