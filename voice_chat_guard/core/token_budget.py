"""
Token estimation and conversation-history budgeting.

Estimates are a conservative heuristic, not a real tokenizer. A real
tokenizer can replace ``estimate_tokens`` without changing the selection
contract: greedy from the most recent message, then one partial message.
"""

import math
from typing import List, Optional, Sequence

from voice_chat_guard.config.loader import AppConfig
from voice_chat_guard.storage.models import ChatMessage, ConversationContext, Tier

# Room kept free beyond prompt and response reservations
RESERVE_BUFFER_TOKENS = 100
# Below this many remaining tokens a partial message is not worth sending
MIN_PARTIAL_TOKENS = 50
CHARS_PER_TOKEN_CUT = 3
ELLIPSIS = "..."


def estimate_tokens(text: str) -> int:
    """Estimate the token cost of text.

    Uses the higher of a character-based (3.5 chars/token) and a word-based
    (1.3 tokens/word) estimate, so the result over-counts rather than
    under-counts.
    """
    if not text:
        return 0
    char_based = math.ceil(len(text) / 3.5)
    word_based = math.ceil(len(text.split()) * 1.3)
    return max(char_based, word_based)


def messages_token_count(messages: Sequence[ChatMessage]) -> int:
    return sum(estimate_tokens(m.content) for m in messages)


def context_token_count(context: Optional[ConversationContext]) -> int:
    """Estimated tokens across every message of a context."""
    if context is None:
        return 0
    return messages_token_count(context.messages)


def available_context_tokens(
    prompt_tokens: int,
    max_response_tokens: int,
    max_context_tokens: int,
) -> int:
    """Tokens left for history after reserving prompt, response and buffer.

    May be negative when the prompt alone overflows the window.
    """
    reserved = prompt_tokens + max_response_tokens + RESERVE_BUFFER_TOKENS
    return max_context_tokens - reserved


def truncate_message_content(content: str, max_tokens: int) -> Optional[str]:
    """Cut content to a prefix whose estimate fits ``max_tokens``.

    The cut lands at roughly 3 chars/token, backing off to the last space
    when that space sits past 80% of the allowed length, and ends with an
    ellipsis. Returns None when no meaningful prefix fits.
    """
    if max_tokens < MIN_PARTIAL_TOKENS:
        return None
    if estimate_tokens(content) <= max_tokens:
        return content

    max_chars = max_tokens * CHARS_PER_TOKEN_CUT
    while max_chars > len(ELLIPSIS):
        candidate = _cut(content, max_chars)
        cost = estimate_tokens(candidate)
        if cost <= max_tokens:
            return candidate if candidate != ELLIPSIS else None
        # Word-dense text can out-count the character cut; shrink and retry
        max_chars = min(max_chars - 1, int(max_chars * max_tokens / cost))
    return None


def _cut(content: str, max_chars: int) -> str:
    if len(content) <= max_chars:
        return content
    truncated = content[:max(max_chars - 10, 0)]
    last_space = truncated.rfind(" ")
    if last_space > max_chars * 0.8:
        truncated = truncated[:last_space]
    return truncated.rstrip() + ELLIPSIS


def truncate_history(
    messages: Sequence[ChatMessage],
    budget: int,
    max_messages: int,
) -> List[ChatMessage]:
    """Select the most recent messages that fit a token budget.

    Walks backward from the newest message while the cumulative estimate
    stays within ``budget``, never taking more than ``max_messages``. When
    the next message does not fit but more than 50 tokens remain, a
    truncated prefix of it is included and selection stops.

    Returns:
        Selected messages in chronological order. Their estimated total
        never exceeds ``budget``.
    """
    if budget <= 0 or max_messages <= 0 or not messages:
        return []

    recent = list(messages)[-max_messages:]
    selected: List[ChatMessage] = []
    used = 0

    for message in reversed(recent):
        cost = estimate_tokens(message.content)
        if used + cost <= budget:
            selected.append(message)
            used += cost
            continue

        remaining = budget - used
        if remaining > MIN_PARTIAL_TOKENS:
            partial = truncate_message_content(message.content, remaining)
            if partial:
                selected.append(ChatMessage(
                    role=message.role,
                    content=partial,
                    timestamp=message.timestamp,
                ))
        break

    selected.reverse()
    return selected


class ContextBudgeter:
    """Shapes conversation history for a tier within the context window."""

    def __init__(self, config: AppConfig):
        self.config = config

    def history_budget(self, prompt: str, tier: Tier) -> int:
        """Tokens available for history alongside ``prompt``."""
        model_config = self.config.model_config(tier)
        return available_context_tokens(
            estimate_tokens(prompt),
            model_config.max_response_tokens,
            self.config.max_context_tokens,
        )

    def select_history(
        self,
        prompt: str,
        context: Optional[ConversationContext],
        tier: Tier,
    ) -> List[ChatMessage]:
        """History messages to send with ``prompt`` for this tier."""
        if context is None or not context.messages:
            return []
        return truncate_history(
            context.messages,
            self.history_budget(prompt, tier),
            self.config.history_limit(tier),
        )

    def needs_truncation(
        self,
        context: ConversationContext,
        tier: Tier,
        extra_prompt_tokens: int = 0,
    ) -> bool:
        """Whether context, prompt and response together overflow the window."""
        total = (
            context_token_count(context)
            + extra_prompt_tokens
            + self.config.model_config(tier).max_response_tokens
        )
        return total > self.config.max_context_tokens
