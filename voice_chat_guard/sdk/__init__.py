"""
SDK for Voice Chat Guard.

Provides the model-call orchestrator used by conversation turns.
"""

from .orchestrator import LLMOrchestrator, classify_api_error

__all__ = ["LLMOrchestrator", "classify_api_error"]
