"""
Idle decisions for active interactions.

Everything here is pure: the same snapshot and instant always give the same
answer, so the engine can evaluate candidates at scan time and hand the
matching guard to the store to be re-checked at write time.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from idlewatch.schemas.interaction import (
    AgentReminderSettings,
    InteractionSnapshot,
    InteractionStatus,
    TransitionGuard,
)


def minutes_before(now: datetime, minutes: int) -> datetime:
    return now - timedelta(minutes=minutes)


def reminder_interval(reminder: Optional[AgentReminderSettings]) -> Optional[int]:
    """Warning threshold in minutes, or None when the agent is exempt from warnings."""
    if reminder is None or not reminder.enabled_reminder:
        return None
    interval = reminder.reminder_interval_minutes
    if interval is None or interval <= 0:
        return None
    return interval


@dataclass(frozen=True)
class IdlePolicy:
    close_after_warn_minutes: int
    waiting_resolve_after_minutes: int

    @classmethod
    def from_settings(cls, idle: Any) -> "IdlePolicy":
        return cls(
            close_after_warn_minutes=int(idle.close_after_warn_minutes),
            waiting_resolve_after_minutes=int(idle.waiting_resolve_after_minutes),
        )

    def needs_warning(
        self,
        snapshot: InteractionSnapshot,
        reminder: Optional[AgentReminderSettings],
        now: datetime,
    ) -> bool:
        if snapshot.status != InteractionStatus.RUNNING:
            return False
        if snapshot.warned_at is not None:
            return False

        interval = reminder_interval(reminder)
        if interval is None:
            return False

        return snapshot.chat_updated_at < minutes_before(now, interval)

    def needs_auto_close(self, snapshot: InteractionSnapshot, now: datetime) -> bool:
        if snapshot.status == InteractionStatus.RUNNING:
            if snapshot.warned_at is None:
                return False
            # Chat activity after the warning keeps the interaction open
            cutoff = minutes_before(now, self.close_after_warn_minutes)
            return snapshot.warned_at < cutoff and snapshot.chat_updated_at < cutoff

        if snapshot.status == InteractionStatus.WAITING:
            if snapshot.human_talk:
                return False
            cutoff = minutes_before(now, self.waiting_resolve_after_minutes)
            return snapshot.chat_updated_at < cutoff

        return False

    def warning_guard(
        self,
        snapshot: InteractionSnapshot,
        reminder: Optional[AgentReminderSettings],
        now: datetime,
    ) -> TransitionGuard:
        interval = reminder_interval(reminder)
        if interval is None:
            raise ValueError(f"Agent {snapshot.agent_id} is exempt from idle warnings")

        return TransitionGuard(
            expected_status=InteractionStatus.RUNNING,
            chat_idle_before=minutes_before(now, interval),
        )

    def auto_close_guard(
        self, snapshot: InteractionSnapshot, now: datetime
    ) -> TransitionGuard:
        if snapshot.status == InteractionStatus.RUNNING:
            cutoff = minutes_before(now, self.close_after_warn_minutes)
            return TransitionGuard(
                expected_status=InteractionStatus.RUNNING,
                chat_idle_before=cutoff,
                warned_before=cutoff,
            )

        if snapshot.status == InteractionStatus.WAITING:
            return TransitionGuard(
                expected_status=InteractionStatus.WAITING,
                chat_idle_before=minutes_before(
                    now, self.waiting_resolve_after_minutes
                ),
                require_no_human_talk=True,
            )

        raise ValueError(f"Interaction {snapshot.id} is not active")

    def auto_close_reason(self, snapshot: InteractionSnapshot) -> str:
        if snapshot.status == InteractionStatus.WAITING:
            minutes = self.waiting_resolve_after_minutes
        else:
            minutes = self.close_after_warn_minutes
        return f"Automatically closed due to {minutes} minutes of inactivity"
