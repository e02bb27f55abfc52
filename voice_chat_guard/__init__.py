"""
Voice Chat Guard.

Conversation-turn engine for voice assistants backed by a hosted LLM:
tiered daily usage limits, token-bounded conversation memory, and a
retrying, classified model-call path.
"""

__version__ = "0.1.0"
