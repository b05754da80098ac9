"""
SDK for Craft Ledger.

Provides metered wrappers around AI provider clients.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]
