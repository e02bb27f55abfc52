"""
Unit tests for session coordination.

Tests end-of-session heuristics, context lifecycle and the full turn
pipeline against in-memory repositories and a mocked orchestrator.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from voice_chat_guard.config.loader import AppConfig
from voice_chat_guard.core.errors import ErrorKind, LLMServiceError
from voice_chat_guard.core.session import (
    EndReason,
    SessionCoordinator,
    TurnStatus,
    contains_closing_phrase,
    is_ending_intent,
)
from voice_chat_guard.core.side_channel import AnalyticsSink, SideChannel
from voice_chat_guard.core.usage_gate import UsageStatus
from voice_chat_guard.storage.models import (
    ChatMessage,
    ConversationContext,
    MessageRole,
    Tier,
    UsageState,
)
from voice_chat_guard.storage.repository import (
    InMemoryContextRepository,
    InMemoryUsageRepository,
)

NOW = datetime(2024, 3, 15, 14, 30, tzinfo=timezone.utc)


class RecordingSink(AnalyticsSink):
    """Analytics sink that records every event."""

    def __init__(self):
        self.events = []

    async def log_conversation(self, user_id, tier, response_time_ms, question_length, response_length):
        self.events.append(("conversation", user_id, tier, question_length, response_length))

    async def log_usage_limit(self, user_id, limit_type, limit_reached):
        self.events.append(("usage_limit", user_id, limit_type, limit_reached))

    async def log_error(self, user_id, kind, details):
        self.events.append(("error", user_id, kind, details["status_code"]))


class FailingSink(RecordingSink):
    async def log_conversation(self, *args, **kwargs):
        raise RuntimeError("analytics backend down")


def make_context(count, last_updated=NOW, user_id="user-1"):
    start = last_updated - timedelta(seconds=count)
    messages = [
        ChatMessage(
            role=MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT,
            content=f"message {i}",
            timestamp=start + timedelta(seconds=i + 1),
        )
        for i in range(count)
    ]
    return ConversationContext(
        user_id=user_id,
        session_id="session-1",
        messages=messages,
        created_at=start,
        last_updated=last_updated,
    )


class TestPhrases:
    """Test closing-phrase and ending-intent detection."""

    @pytest.mark.parametrize("reply", [
        "Goodbye!",
        "Alright, TAKE CARE now.",
        "Have a good day and see you later",
        "Until next time.",
    ])
    def test_closing_phrases(self, reply):
        assert contains_closing_phrase(reply)

    def test_no_closing_phrase(self):
        assert not contains_closing_phrase("The weather is sunny today.")

    @pytest.mark.parametrize("utterance", ["stop", "  Quit  ", "ok bye", "that's all", "cancel please"])
    def test_ending_intents(self, utterance):
        assert is_ending_intent(utterance)

    @pytest.mark.parametrize("utterance", ["stopwatch settings", "tell me a story", "weekend plans"])
    def test_not_ending_intents(self, utterance):
        assert not is_ending_intent(utterance)


class TestSessionLifecycle:
    """Test end-of-session evaluation and context handling."""

    def setup_method(self):
        """Set up a coordinator with a fixed clock."""
        self.config = AppConfig(api_key="test-key")
        self.contexts = InMemoryContextRepository()
        self.usage = InMemoryUsageRepository()
        self.coordinator = SessionCoordinator(
            self.config,
            Mock(),
            self.contexts,
            self.usage,
            clock=lambda: NOW,
        )

    def test_long_recent_context_should_end_but_is_not_expired(self):
        """25 messages, last update 15 minutes ago."""
        context = make_context(25, last_updated=NOW - timedelta(minutes=15))

        assert self.coordinator.is_hard_expired(context) is False
        assert self.coordinator.should_end_session(context) is True
        assert self.coordinator.end_reason(context) == EndReason.MESSAGE_LIMIT

    def test_long_context_updated_just_now(self):
        context = make_context(25, last_updated=NOW)

        assert self.coordinator.is_hard_expired(context) is False
        assert self.coordinator.should_end_session(context) is True

    def test_closing_phrase_wins(self):
        context = make_context(25, last_updated=NOW - timedelta(minutes=45))
        assert self.coordinator.end_reason(context, "Goodbye!") == EndReason.CLOSING_PHRASE

    def test_inactivity(self):
        context = make_context(4, last_updated=NOW - timedelta(minutes=31))
        assert self.coordinator.end_reason(context, "Sure.") == EndReason.INACTIVITY

    def test_active_short_session_continues(self):
        context = make_context(4, last_updated=NOW - timedelta(minutes=5))

        assert self.coordinator.end_reason(context, "Anything else?") is None
        assert self.coordinator.should_end_session(context, "Anything else?") is False

    def test_hard_expiry(self):
        assert self.coordinator.is_hard_expired(make_context(2, last_updated=NOW - timedelta(minutes=121)))
        assert not self.coordinator.is_hard_expired(make_context(2, last_updated=NOW - timedelta(minutes=119)))

    @pytest.mark.asyncio
    async def test_hard_expired_context_discarded(self):
        await self.contexts.save(make_context(6, last_updated=NOW - timedelta(hours=3)))

        assert await self.coordinator.load_context("user-1") is None
        assert await self.contexts.get("user-1") is None

    @pytest.mark.asyncio
    async def test_recent_context_reused(self):
        context = make_context(6, last_updated=NOW - timedelta(minutes=10))
        await self.contexts.save(context)

        assert await self.coordinator.get_or_create_context("user-1", "session-2") == context

    @pytest.mark.asyncio
    async def test_new_context_created(self):
        context = await self.coordinator.get_or_create_context("user-9", "session-9")

        assert context.user_id == "user-9"
        assert context.session_id == "session-9"
        assert context.messages == ()
        assert context.created_at == NOW

    def test_append_turn_keeps_order(self):
        context = make_context(2, last_updated=NOW)

        updated = self.coordinator.append_turn(context, "What's next?", "Lunch.")

        assert updated.message_count == 4
        assert [m.role for m in updated.messages[-2:]] == [MessageRole.USER, MessageRole.ASSISTANT]
        timestamps = [m.timestamp for m in updated.messages]
        assert timestamps == sorted(timestamps)
        assert len(set(timestamps)) == len(timestamps)
        assert updated.last_updated == updated.messages[-1].timestamp
        assert updated.token_count > 0

    def test_trim_for_storage(self):
        trimmed = self.coordinator.trim_for_storage(make_context(60))

        assert trimmed.message_count == 50
        assert trimmed.messages[0].content == "message 10"

    @pytest.mark.asyncio
    async def test_end_conversation(self):
        await self.contexts.save(make_context(6, last_updated=NOW))

        summary = await self.coordinator.end_conversation("user-1")

        assert summary.message_count == 6
        assert summary.user_messages == 3
        assert summary.assistant_messages == 3
        assert summary.duration_seconds == 6
        assert await self.contexts.get("user-1") is None
        assert await self.coordinator.end_conversation("user-1") is None

    def test_validate_and_repair(self):
        context = make_context(3)
        shuffled = ConversationContext(
            user_id=context.user_id,
            session_id=context.session_id,
            messages=tuple(reversed(context.messages)),
            created_at=context.created_at,
            last_updated=context.created_at,
        )

        repaired, changed = self.coordinator.validate_and_repair(shuffled)

        assert changed is True
        assert repaired.messages == context.messages
        assert repaired.last_updated == context.messages[-1].timestamp
        assert repaired.token_count > 0

        again, changed_again = self.coordinator.validate_and_repair(repaired)
        assert changed_again is False
        assert again is repaired


class TestRunTurn:
    """Test the full conversation turn pipeline."""

    def setup_method(self):
        """Set up coordinator, repositories and analytics."""
        self.config = AppConfig(api_key="test-key")
        self.contexts = InMemoryContextRepository()
        self.usage = InMemoryUsageRepository()
        self.orchestrator = Mock()
        self.orchestrator.generate = AsyncMock(return_value="It is sunny.")
        self.sink = RecordingSink()
        self.side_channel = SideChannel()
        self.coordinator = SessionCoordinator(
            self.config,
            self.orchestrator,
            self.contexts,
            self.usage,
            analytics=self.sink,
            side_channel=self.side_channel,
            clock=lambda: NOW,
        )

    @pytest.mark.asyncio
    async def test_first_turn_completes(self):
        result = await self.coordinator.run_turn("user-1", "session-1", "What's the weather?")
        await self.side_channel.drain()

        assert result.status == TurnStatus.COMPLETED
        assert result.reply == "It is sunny."
        assert result.remaining_usage == 4
        assert result.usage.status == UsageStatus.UNDER_LIMIT
        assert result.should_end_session is False
        assert result.context.message_count == 2

        stored = await self.contexts.get("user-1")
        assert stored == result.context
        assert (await self.usage.get("user-1")).daily_usage_count == 1
        assert self.sink.events == [("conversation", "user-1", Tier.FREE, 19, 12)]

    @pytest.mark.asyncio
    async def test_history_passed_to_orchestrator(self):
        context = make_context(4, last_updated=NOW - timedelta(minutes=2))
        await self.contexts.save(context)

        await self.coordinator.run_turn("user-1", "session-1", "And tomorrow?")

        prompt, passed_context, tier = self.orchestrator.generate.await_args.args
        assert prompt == "And tomorrow?"
        assert passed_context == context
        assert tier == Tier.FREE

    @pytest.mark.asyncio
    async def test_limited_turn_skips_model(self):
        await self.usage.save(UsageState(user_id="user-1", daily_usage_count=5, last_reset_date=NOW))

        result = await self.coordinator.run_turn("user-1", "session-1", "Hello?")
        await self.side_channel.drain()

        assert result.status == TurnStatus.LIMITED
        assert result.reply is None
        assert result.remaining_usage == 0
        assert result.usage.limit_reset_time == datetime(2024, 3, 16, tzinfo=timezone.utc)
        self.orchestrator.generate.assert_not_awaited()
        assert (await self.usage.get("user-1")).daily_usage_count == 5
        assert self.sink.events == [("usage_limit", "user-1", "daily", True)]

    @pytest.mark.asyncio
    async def test_last_allowed_turn_reports_limit_reached(self):
        """The turn that spends the final quota slot reports the user at the limit."""
        await self.usage.save(UsageState(user_id="user-1", daily_usage_count=4, last_reset_date=NOW))

        result = await self.coordinator.run_turn("user-1", "session-1", "One last question")

        assert result.status == TurnStatus.COMPLETED
        assert result.reply == "It is sunny."
        assert result.usage.can_proceed is False
        assert result.usage.status == UsageStatus.AT_LIMIT
        assert result.remaining_usage == 0
        assert result.usage.state.daily_usage_count == 5
        assert result.usage_state.daily_usage_count == 5
        assert result.usage.changed is False

    @pytest.mark.asyncio
    async def test_completed_turn_usage_matches_stored_state(self):
        await self.usage.save(UsageState(user_id="user-1", daily_usage_count=2, last_reset_date=NOW))

        result = await self.coordinator.run_turn("user-1", "session-1", "Hello?")

        assert result.usage.can_proceed is True
        assert result.usage.status == UsageStatus.UNDER_LIMIT
        assert result.remaining_usage == 2
        assert result.usage.state == await self.usage.get("user-1")

    @pytest.mark.asyncio
    async def test_yesterdays_limit_rolls_over(self):
        await self.usage.save(UsageState(
            user_id="user-1", daily_usage_count=5, last_reset_date=NOW - timedelta(days=1),
        ))

        result = await self.coordinator.run_turn("user-1", "session-1", "Hello?")

        assert result.status == TurnStatus.COMPLETED
        assert result.remaining_usage == 4
        assert (await self.usage.get("user-1")).daily_usage_count == 1

    @pytest.mark.asyncio
    async def test_premium_unlimited(self):
        await self.usage.save(UsageState(
            user_id="user-1", tier=Tier.PREMIUM, daily_usage_count=100, last_reset_date=NOW,
        ))

        result = await self.coordinator.run_turn("user-1", "session-1", "Hello?")

        assert result.status == TurnStatus.COMPLETED
        assert result.remaining_usage is None
        assert result.usage.status == UsageStatus.UNLIMITED
        assert self.orchestrator.generate.await_args.args[2] == Tier.PREMIUM

    @pytest.mark.asyncio
    async def test_lapsed_premium_is_limited_as_free(self):
        await self.usage.save(UsageState(
            user_id="user-1",
            tier=Tier.PREMIUM,
            daily_usage_count=8,
            last_reset_date=NOW,
            subscription_id="sub_1",
            expires_at=NOW - timedelta(days=1),
        ))

        result = await self.coordinator.run_turn("user-1", "session-1", "Hello?")

        assert result.status == TurnStatus.LIMITED
        stored = await self.usage.get("user-1")
        assert stored.tier == Tier.FREE
        assert stored.subscription_id is None

    @pytest.mark.asyncio
    async def test_failed_turn_does_not_count(self):
        self.orchestrator.generate.side_effect = LLMServiceError(
            "Retries exhausted", ErrorKind.RATE_LIMIT, status_code=429,
        )

        result = await self.coordinator.run_turn("user-1", "session-1", "Hello?")
        await self.side_channel.drain()

        assert result.status == TurnStatus.FAILED
        assert result.error_kind == ErrorKind.RATE_LIMIT
        assert result.reply is None
        assert await self.contexts.get("user-1") is None
        # First encounter still persists the fresh state, with no usage recorded
        assert (await self.usage.get("user-1")).daily_usage_count == 0
        assert self.sink.events == [("error", "user-1", ErrorKind.RATE_LIMIT, 429)]

    @pytest.mark.asyncio
    async def test_closing_reply_ends_session(self):
        self.orchestrator.generate.return_value = "You're welcome, goodbye!"

        result = await self.coordinator.run_turn("user-1", "session-1", "Thanks")

        assert result.should_end_session is True
        assert result.end_reason == EndReason.CLOSING_PHRASE

    @pytest.mark.asyncio
    async def test_message_limit_ends_session(self):
        await self.contexts.save(make_context(18, last_updated=NOW - timedelta(minutes=1)))

        result = await self.coordinator.run_turn("user-1", "session-1", "One more")

        assert result.context.message_count == 20
        assert result.end_reason == EndReason.MESSAGE_LIMIT

    @pytest.mark.asyncio
    async def test_analytics_failure_does_not_fail_turn(self):
        self.coordinator.analytics = FailingSink()

        result = await self.coordinator.run_turn("user-1", "session-1", "Hello?")
        await self.side_channel.drain()

        assert result.status == TurnStatus.COMPLETED
        assert self.side_channel.pending == 0

    @pytest.mark.asyncio
    async def test_empty_prompt_rejected(self):
        with pytest.raises(ValueError, match="prompt"):
            await self.coordinator.run_turn("user-1", "session-1", "   ")
        self.orchestrator.generate.assert_not_awaited()
