"""
Core modules for Voice Chat Guard.

This package contains the conversation-turn engine: error taxonomy and
retry policy, token budgeting, usage limits, and session coordination.
"""
