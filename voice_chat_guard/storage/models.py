"""
Data models for storage layer.

Defines the conversation and usage records exchanged with persistence
collaborators. Records are immutable; every mutation produces a new value
that the caller is responsible for persisting.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class Tier(Enum):
    """Subscription level governing model choice and usage limits."""
    FREE = "free"
    PREMIUM = "premium"


class MessageRole(Enum):
    """Author of a chat message."""
    USER = "user"
    ASSISTANT = "assistant"


def utc_now() -> datetime:
    """Current time in UTC, the reference zone for every stored timestamp."""
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ChatMessage:
    """Single message within a conversation."""
    role: MessageRole
    content: str
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        """Validate role and content."""
        if not isinstance(self.role, MessageRole):
            raise ValueError(f"role must be a MessageRole, got: {self.role!r}")
        if not isinstance(self.content, str) or not self.content.strip():
            raise ValueError("content is required and cannot be empty")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            role=MessageRole(data["role"]),
            content=data["content"],
            timestamp=_parse_timestamp(data["timestamp"]),
        )


@dataclass(frozen=True)
class ConversationContext:
    """Chronological conversation history for one user session.

    ``token_count`` approximates the summed token estimate of ``messages``;
    it is computed from the messages when omitted and recomputed whenever
    messages change.
    """
    user_id: str
    session_id: str
    messages: Tuple[ChatMessage, ...] = ()
    created_at: datetime = field(default_factory=utc_now)
    last_updated: datetime = field(default_factory=utc_now)
    token_count: int = 0

    def __post_init__(self):
        """Validate identifiers and counters."""
        if not self.user_id or not self.user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        if not self.session_id or not self.session_id.strip():
            raise ValueError("session_id is required and cannot be empty")
        if self.token_count < 0:
            raise ValueError("token_count cannot be negative")
        # Accept any sequence but store a tuple so the record stays immutable
        object.__setattr__(self, "messages", tuple(self.messages))
        if self.messages and not self.token_count:
            # Deferred: token_budget imports this module
            from voice_chat_guard.core.token_budget import messages_token_count
            object.__setattr__(self, "token_count", messages_token_count(self.messages))

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "messages": [message.to_dict() for message in self.messages],
            "created_at": self.created_at.isoformat(),
            "last_updated": self.last_updated.isoformat(),
            "token_count": self.token_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationContext":
        return cls(
            user_id=data["user_id"],
            session_id=data["session_id"],
            messages=tuple(ChatMessage.from_dict(m) for m in data.get("messages") or []),
            created_at=_parse_timestamp(data["created_at"]),
            last_updated=_parse_timestamp(data["last_updated"]),
            token_count=data.get("token_count") or 0,
        )


@dataclass(frozen=True)
class UsageState:
    """Per-user daily usage counter and subscription tier.

    ``daily_usage_count`` only has meaning relative to the calendar day of
    ``last_reset_date``; for premium users it is ignored by admission control.
    """
    user_id: str
    tier: Tier = Tier.FREE
    daily_usage_count: int = 0
    last_reset_date: datetime = field(default_factory=utc_now)
    subscription_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate identifiers and counters."""
        if not self.user_id or not self.user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        if not isinstance(self.tier, Tier):
            raise ValueError(f"tier must be a Tier, got: {self.tier!r}")
        if self.daily_usage_count < 0:
            raise ValueError("daily_usage_count cannot be negative")

    @classmethod
    def new_free_user(cls, user_id: str, now: Optional[datetime] = None) -> "UsageState":
        """First-encounter state: free tier with an empty quota."""
        return cls(user_id=user_id, last_reset_date=now or utc_now())

    def with_count(self, count: int, reset_date: Optional[datetime] = None) -> "UsageState":
        return replace(
            self,
            daily_usage_count=count,
            last_reset_date=reset_date or self.last_reset_date,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "tier": self.tier.value,
            "daily_usage_count": self.daily_usage_count,
            "last_reset_date": self.last_reset_date.isoformat(),
            "subscription_id": self.subscription_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageState":
        expires_at = data.get("expires_at")
        return cls(
            user_id=data["user_id"],
            tier=Tier(data.get("tier", Tier.FREE.value)),
            daily_usage_count=data.get("daily_usage_count") or 0,
            last_reset_date=_parse_timestamp(data["last_reset_date"]),
            subscription_id=data.get("subscription_id"),
            expires_at=_parse_timestamp(expires_at) if expires_at else None,
        )


@dataclass(frozen=True)
class ModelConfig:
    """Model parameters resolved for a subscription tier."""
    model: str
    max_response_tokens: int
    temperature: float
    top_p: float

    def __post_init__(self):
        """Validate model parameters are reasonable."""
        if not self.model or not self.model.strip():
            raise ValueError("model is required and cannot be empty")
        if self.max_response_tokens <= 0:
            raise ValueError("max_response_tokens must be > 0")
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")
        if not 0 < self.top_p <= 1:
            raise ValueError("top_p must be in (0, 1]")
