"""
Conversation session coordination.

Drives one conversation turn as a sequential pipeline:

1. Usage limit check (before any model call)
2. Context fetch, discarding contexts idle past the hard expiry
3. History truncation and model call
4. Persistence of the new turn and the usage counter
5. End-of-session evaluation

End-of-turn heuristic, in priority order:
- Reply contains a closing phrase (case-insensitive substring)
- Context holds at least ``max_session_messages`` messages
- Context idle longer than ``session_timeout_minutes``

The hard expiry (``hard_expiry_minutes``) is separate and longer: it decides
whether a stored context is reused at all.
"""

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Sequence, Tuple

from voice_chat_guard.config.loader import AppConfig
from voice_chat_guard.sdk.orchestrator import LLMOrchestrator
from voice_chat_guard.storage.models import (
    ChatMessage,
    ConversationContext,
    MessageRole,
    UsageState,
    utc_now,
)
from voice_chat_guard.storage.repository import (
    ConversationContextRepository,
    UsageStateRepository,
)

from .errors import ErrorKind, LLMServiceError
from .side_channel import AnalyticsSink, SideChannel
from .token_budget import messages_token_count
from .usage_gate import UsageDecision, UsageGate

logger = logging.getLogger(__name__)

CLOSING_PHRASES = (
    "goodbye",
    "bye",
    "see you later",
    "talk to you later",
    "have a good day",
    "take care",
    "farewell",
    "until next time",
)

ENDING_INTENTS = (
    "stop",
    "exit",
    "quit",
    "end",
    "goodbye",
    "bye",
    "cancel",
    "that's all",
    "nothing else",
    "no more questions",
)


class EndReason(Enum):
    """Why a session ended or should end."""
    CLOSING_PHRASE = "closing_phrase"
    MESSAGE_LIMIT = "message_limit"
    INACTIVITY = "inactivity"
    HARD_EXPIRY = "hard_expiry"
    USER_REQUEST = "user_request"


class TurnStatus(Enum):
    """Outcome of a conversation turn."""
    COMPLETED = "completed"
    LIMITED = "limited"
    FAILED = "failed"


@dataclass(frozen=True)
class TurnResult:
    """Everything a request handler needs to respond and persist.

    The coordinator has already persisted ``context`` and ``usage_state``.
    """
    status: TurnStatus
    usage: UsageDecision
    usage_state: UsageState
    reply: Optional[str] = None
    context: Optional[ConversationContext] = None
    should_end_session: bool = False
    end_reason: Optional[EndReason] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def remaining_usage(self) -> Optional[int]:
        return self.usage.remaining_usage


@dataclass(frozen=True)
class ConversationSummary:
    """Conversation statistics for analytics or debugging."""
    message_count: int
    token_count: int
    duration_seconds: int
    user_messages: int
    assistant_messages: int


def contains_closing_phrase(text: str) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in CLOSING_PHRASES)


def is_ending_intent(user_input: str) -> bool:
    """Whether an utterance asks to end the conversation."""
    lowered = user_input.lower().strip()
    return any(
        lowered == intent
        or lowered.startswith(intent + " ")
        or lowered.endswith(" " + intent)
        for intent in ENDING_INTENTS
    )


def _next_timestamp(previous: Optional[datetime], now: datetime) -> datetime:
    """``now``, nudged forward so messages stay strictly time-ordered."""
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


class SessionCoordinator:
    """Owns session lifecycle and runs conversation turns."""

    def __init__(
        self,
        config: AppConfig,
        orchestrator: LLMOrchestrator,
        context_repository: ConversationContextRepository,
        usage_repository: UsageStateRepository,
        gate: Optional[UsageGate] = None,
        analytics: Optional[AnalyticsSink] = None,
        side_channel: Optional[SideChannel] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.orchestrator = orchestrator
        self.contexts = context_repository
        self.usage = usage_repository
        self.clock = clock
        self.gate = gate or UsageGate.from_config(config, clock=clock)
        self.analytics = analytics
        self.side_channel = side_channel or SideChannel()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def is_hard_expired(self, context: ConversationContext, now: Optional[datetime] = None) -> bool:
        """Whether a stored context is too old to reuse."""
        now = now or self.clock()
        return now - context.last_updated > timedelta(minutes=self.config.hard_expiry_minutes)

    def end_reason(
        self,
        context: ConversationContext,
        reply: str = "",
        now: Optional[datetime] = None,
    ) -> Optional[EndReason]:
        """First matching end-of-turn reason, or None to keep the session open."""
        if reply and contains_closing_phrase(reply):
            return EndReason.CLOSING_PHRASE
        if context.message_count >= self.config.max_session_messages:
            return EndReason.MESSAGE_LIMIT
        now = now or self.clock()
        if now - context.last_updated > timedelta(minutes=self.config.session_timeout_minutes):
            return EndReason.INACTIVITY
        return None

    def should_end_session(self, context: ConversationContext, reply: str = "") -> bool:
        return self.end_reason(context, reply) is not None

    async def load_context(self, user_id: str) -> Optional[ConversationContext]:
        """Stored context for a user, treating hard-expired contexts as absent."""
        context = await self.contexts.get(user_id)
        if context is None:
            return None
        if self.is_hard_expired(context):
            logger.info(
                "Discarding expired conversation context for user %s", user_id,
                extra={"user_id": user_id, "session_id": context.session_id},
            )
            await self.contexts.delete(user_id)
            return None
        return context

    async def get_or_create_context(self, user_id: str, session_id: str) -> ConversationContext:
        context = await self.load_context(user_id)
        if context is not None:
            return context
        now = self.clock()
        return ConversationContext(
            user_id=user_id,
            session_id=session_id,
            created_at=now,
            last_updated=now,
        )

    def append_turn(
        self,
        context: ConversationContext,
        user_text: str,
        reply: str,
    ) -> ConversationContext:
        """Context with one user message and one assistant reply appended."""
        now = self.clock()
        previous = context.messages[-1].timestamp if context.messages else None
        user_message = ChatMessage(MessageRole.USER, user_text, _next_timestamp(previous, now))
        assistant_message = ChatMessage(
            MessageRole.ASSISTANT, reply, _next_timestamp(user_message.timestamp, now)
        )
        return self._with_messages(
            context,
            context.messages + (user_message, assistant_message),
            last_updated=assistant_message.timestamp,
        )

    def trim_for_storage(self, context: ConversationContext) -> ConversationContext:
        """Keep only the most recent ``max_stored_messages`` messages."""
        limit = self.config.max_stored_messages
        if context.message_count <= limit:
            return context
        return self._with_messages(context, context.messages[-limit:])

    async def save_context(self, context: ConversationContext) -> ConversationContext:
        trimmed = self.trim_for_storage(context)
        await self.contexts.save(trimmed)
        return trimmed

    async def end_conversation(
        self,
        user_id: str,
        reason: EndReason = EndReason.USER_REQUEST,
    ) -> Optional[ConversationSummary]:
        """Clear a user's stored context, returning its summary if one existed."""
        context = await self.contexts.get(user_id)
        summary = None
        if context is not None:
            summary = self.summarize(context)
            logger.info(
                "Ending conversation for user %s (%s): %d messages, %d tokens, %ds",
                user_id, reason.value, summary.message_count,
                summary.token_count, summary.duration_seconds,
                extra={"user_id": user_id, "end_reason": reason.value},
            )
        await self.contexts.delete(user_id)
        return summary

    @staticmethod
    def summarize(context: ConversationContext) -> ConversationSummary:
        user_messages = sum(1 for m in context.messages if m.role == MessageRole.USER)
        duration = context.last_updated - context.created_at
        return ConversationSummary(
            message_count=context.message_count,
            token_count=context.token_count,
            duration_seconds=max(0, int(duration.total_seconds())),
            user_messages=user_messages,
            assistant_messages=context.message_count - user_messages,
        )

    def validate_and_repair(self, context: ConversationContext) -> Tuple[ConversationContext, bool]:
        """Fix ordering, token count and last-updated drift.

        Returns:
            (context, repaired) where repaired tells the caller to persist
        """
        ordered = tuple(sorted(context.messages, key=lambda m: m.timestamp))
        token_count = messages_token_count(ordered)
        last_updated = context.last_updated
        if ordered and ordered[-1].timestamp > last_updated:
            last_updated = ordered[-1].timestamp

        repaired = (
            ordered != context.messages
            or token_count != context.token_count
            or last_updated != context.last_updated
        )
        if not repaired:
            return context, False

        logger.info(
            "Repaired conversation context for user %s", context.user_id,
            extra={"user_id": context.user_id, "session_id": context.session_id},
        )
        return replace(context, messages=ordered, token_count=token_count, last_updated=last_updated), True

    @staticmethod
    def _with_messages(
        context: ConversationContext,
        messages: Sequence[ChatMessage],
        last_updated: Optional[datetime] = None,
    ) -> ConversationContext:
        return replace(
            context,
            messages=tuple(messages),
            token_count=messages_token_count(messages),
            last_updated=last_updated or context.last_updated,
        )

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def load_usage_state(self, user_id: str) -> Tuple[UsageState, bool]:
        """Stored usage state, or a fresh free-tier state on first encounter.

        Returns:
            (state, changed) where changed means the state is not yet stored
        """
        state = await self.usage.get(user_id)
        if state is None:
            return UsageState.new_free_user(user_id, now=self.clock()), True
        return state, False

    # ------------------------------------------------------------------
    # Turn pipeline
    # ------------------------------------------------------------------

    async def run_turn(self, user_id: str, session_id: str, prompt: str) -> TurnResult:
        """Process one user utterance end to end.

        Model failures are returned as a FAILED result with a classified
        kind; repository errors propagate.
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")

        started = time.monotonic()
        state, state_changed = await self.load_usage_state(user_id)
        state, expired = self.gate.expire_subscription(state)
        decision = self.gate.check(state)
        state = decision.state
        state_changed = state_changed or expired or decision.changed

        if not decision.can_proceed:
            if state_changed:
                await self.usage.save(state)
            logger.info(
                "Usage limit reached for user %s", user_id,
                extra={"user_id": user_id, "user_tier": state.tier.value},
            )
            self._emit("usage_limit", lambda sink: sink.log_usage_limit(user_id, "daily", True))
            return TurnResult(status=TurnStatus.LIMITED, usage=decision, usage_state=state)

        context = await self.get_or_create_context(user_id, session_id)

        try:
            reply = await self.orchestrator.generate(prompt, context, state.tier)
        except LLMServiceError as e:
            if state_changed:
                await self.usage.save(state)
            logger.warning(
                "Conversation turn failed for user %s with %s", user_id, e.kind.name,
                extra={"user_id": user_id, "session_id": session_id, "error_kind": e.kind.value},
            )
            details = {"session_id": session_id, "status_code": e.status_code, "message": str(e)}
            self._emit("error", lambda sink: sink.log_error(user_id, e.kind, details))
            return TurnResult(
                status=TurnStatus.FAILED,
                usage=decision,
                usage_state=state,
                context=context,
                error_kind=e.kind,
            )

        context = await self.save_context(self.append_turn(context, prompt, reply))
        state = self.gate.increment(state)
        await self.usage.save(state)

        reason = self.end_reason(context, reply)
        response_time_ms = (time.monotonic() - started) * 1000
        logger.info(
            "Conversation turn completed for user %s in %.0fms", user_id, response_time_ms,
            extra={
                "user_id": user_id,
                "session_id": context.session_id,
                "message_count": context.message_count,
                "end_reason": reason.value if reason else None,
            },
        )
        tier = state.tier
        self._emit(
            "conversation",
            lambda sink: sink.log_conversation(user_id, tier, response_time_ms, len(prompt), len(reply)),
        )
        return TurnResult(
            status=TurnStatus.COMPLETED,
            usage=self.gate.decide(state),
            usage_state=state,
            reply=reply,
            context=context,
            should_end_session=reason is not None,
            end_reason=reason,
        )

    def _emit(self, label: str, build: Callable[[AnalyticsSink], object]) -> None:
        """Hand an analytics call to the side channel, never failing the turn."""
        if self.analytics is None:
            return
        try:
            awaitable = build(self.analytics)
        except Exception:
            logger.exception("Failed to build analytics event %s", label)
            return
        self.side_channel.dispatch(awaitable, label)
