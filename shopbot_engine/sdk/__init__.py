"""
SDK for the shopbot engine.

Provides the OpenAI-backed generation provider.
"""

from .openai_client import OpenAIProvider, is_retryable_openai_error

__all__ = ["OpenAIProvider", "is_retryable_openai_error"]
