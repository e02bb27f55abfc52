"""
Daily usage limits per subscription tier.

Free users move between UNDER_LIMIT and AT_LIMIT; premium users bypass the
state machine entirely. Calendar days are evaluated in UTC. Every check and
every increment first rolls the counter over when the stored reset date
falls on an earlier day, so the first check after midnight sees a fresh
quota.

The gate issues decisions, not errors: reaching the limit is a normal
outcome.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Callable, Optional, Tuple

from voice_chat_guard.config.loader import AppConfig
from voice_chat_guard.storage.models import Tier, UsageState, utc_now

logger = logging.getLogger(__name__)

REFERENCE_TZ = timezone.utc


class UsageStatus(Enum):
    """Admission state of a user for the current day."""
    UNDER_LIMIT = "under_limit"
    AT_LIMIT = "at_limit"
    UNLIMITED = "unlimited"


@dataclass(frozen=True)
class UsageDecision:
    """Result of an admission check.

    ``state`` is the possibly rolled-over usage state; persist it when
    ``changed`` is True.
    """
    can_proceed: bool
    status: UsageStatus
    remaining_usage: Optional[int]
    limit_reset_time: Optional[datetime]
    state: UsageState
    changed: bool = False


class UsageGate:
    """Tiered daily quota gate."""

    def __init__(
        self,
        daily_limit: int = 5,
        clock: Callable[[], datetime] = utc_now,
        reference_tz: tzinfo = REFERENCE_TZ,
    ):
        if daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")
        self.daily_limit = daily_limit
        self.clock = clock
        self.reference_tz = reference_tz

    @classmethod
    def from_config(cls, config: AppConfig, clock: Callable[[], datetime] = utc_now) -> "UsageGate":
        return cls(daily_limit=config.free_user_daily_limit, clock=clock)

    def calendar_day(self, moment: datetime) -> date:
        """Calendar date of ``moment`` in the reference zone."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(self.reference_tz).date()

    def needs_reset(self, state: UsageState, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        return self.calendar_day(state.last_reset_date) != self.calendar_day(now)

    def reset_if_new_day(self, state: UsageState) -> Tuple[UsageState, bool]:
        """Roll the daily counter over when a new day has started.

        Also the per-record hook for scheduled reset sweeps.

        Returns:
            (state, changed) where changed tells the caller to persist
        """
        now = self.clock()
        if not self.needs_reset(state, now):
            return state, False

        logger.info(
            "Daily usage rollover for user %s (count was %d)",
            state.user_id, state.daily_usage_count,
            extra={"user_id": state.user_id},
        )
        return state.with_count(0, reset_date=now), True

    def limit_reset_time(self, now: Optional[datetime] = None) -> datetime:
        """Start of the next calendar day in the reference zone."""
        now = now or self.clock()
        next_day = self.calendar_day(now) + timedelta(days=1)
        return datetime.combine(next_day, time.min, tzinfo=self.reference_tz)

    def remaining_usage(self, state: UsageState) -> Optional[int]:
        """Conversations left today; None for premium (unlimited)."""
        if state.tier == Tier.PREMIUM:
            return None
        return max(0, self.daily_limit - state.daily_usage_count)

    def check(self, state: UsageState) -> UsageDecision:
        """Decide whether the user may start another conversation turn."""
        if state.tier == Tier.PREMIUM:
            return self.decide(state)

        state, changed = self.reset_if_new_day(state)
        return self.decide(state, changed=changed)

    def decide(self, state: UsageState, changed: bool = False) -> UsageDecision:
        """Admission decision for ``state`` as-is, without a rollover."""
        if state.tier == Tier.PREMIUM:
            return UsageDecision(
                can_proceed=True,
                status=UsageStatus.UNLIMITED,
                remaining_usage=None,
                limit_reset_time=None,
                state=state,
                changed=changed,
            )

        can_proceed = state.daily_usage_count < self.daily_limit
        return UsageDecision(
            can_proceed=can_proceed,
            status=UsageStatus.UNDER_LIMIT if can_proceed else UsageStatus.AT_LIMIT,
            remaining_usage=self.remaining_usage(state),
            limit_reset_time=self.limit_reset_time(),
            state=state,
            changed=changed,
        )

    def increment(self, state: UsageState) -> UsageState:
        """Record one completed conversation turn (no-op for premium)."""
        if state.tier == Tier.PREMIUM:
            return state
        state, _ = self.reset_if_new_day(state)
        return state.with_count(state.daily_usage_count + 1)

    def expire_subscription(self, state: UsageState) -> Tuple[UsageState, bool]:
        """Downgrade a premium state whose subscription has lapsed.

        Returns:
            (state, changed) where changed tells the caller to persist
        """
        if state.tier != Tier.PREMIUM or state.expires_at is None:
            return state, False
        if state.expires_at >= self.clock():
            return state, False

        logger.info(
            "Premium subscription expired for user %s, downgrading to free",
            state.user_id,
            extra={"user_id": state.user_id},
        )
        downgraded = replace(
            state,
            tier=Tier.FREE,
            subscription_id=None,
            expires_at=None,
        )
        return downgraded, True
