"""Automation trigger predicates. Pure functions: all inputs, including the clock, are passed in."""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional

from rsvp_dispatch.models.automation import FlowTrigger
from rsvp_dispatch.models.guest import RsvpStatus
from rsvp_dispatch.utils.time import as_utc

DEFAULT_DELAY_HOURS = {
    FlowTrigger.NO_RESPONSE: 24,
    FlowTrigger.BEFORE_EVENT: 2,
    FlowTrigger.AFTER_EVENT: 12,
}

EVENT_DAY_MORNING_HOUR = 9
DAY_AFTER_MORNING_HOUR = 11
AFTER_EVENT_WINDOW_HOURS = 24


@dataclass(frozen=True)
class TriggerContext:
    rsvp_status: str
    event_starts_at: datetime
    last_sent_at: Optional[datetime] = None
    delay_hours: Optional[int] = None


@dataclass(frozen=True)
class TriggerCheckResult:
    should_trigger: bool
    reason: str
    scheduled_for: Optional[datetime] = None


def _hours(delta: timedelta) -> float:
    return delta.total_seconds() / 3600


def check_no_response(ctx: TriggerContext, now: datetime, hours: int) -> TriggerCheckResult:
    if ctx.rsvp_status != RsvpStatus.PENDING:
        return TriggerCheckResult(False, "Guest already responded")
    if ctx.last_sent_at is None:
        return TriggerCheckResult(False, "No notification sent yet")

    last_sent = as_utc(ctx.last_sent_at)
    if _hours(now - last_sent) >= hours:
        return TriggerCheckResult(True, f"{hours} hours passed since last notification")
    return TriggerCheckResult(
        False,
        f"Only {int(_hours(now - last_sent))} hours passed",
        scheduled_for=last_sent + timedelta(hours=hours),
    )


def check_before_event(ctx: TriggerContext, now: datetime, hours: int) -> TriggerCheckResult:
    if ctx.rsvp_status != RsvpStatus.ACCEPTED:
        return TriggerCheckResult(False, "Guest not confirmed")

    starts_at = as_utc(ctx.event_starts_at)
    hours_until = _hours(starts_at - now)
    if hours_until <= 0:
        return TriggerCheckResult(False, "Event already started")
    if hours_until <= hours:
        return TriggerCheckResult(True, f"Within {hours} hours before event")
    return TriggerCheckResult(
        False,
        f"{int(hours_until)} hours until event",
        scheduled_for=starts_at - timedelta(hours=hours),
    )


def check_after_event(ctx: TriggerContext, now: datetime, hours: int) -> TriggerCheckResult:
    if ctx.rsvp_status != RsvpStatus.ACCEPTED:
        return TriggerCheckResult(False, "Guest not confirmed")

    starts_at = as_utc(ctx.event_starts_at)
    hours_since = _hours(now - starts_at)
    if hours <= hours_since <= hours + AFTER_EVENT_WINDOW_HOURS:
        return TriggerCheckResult(True, f"{hours} hours after event")
    if hours_since < hours:
        return TriggerCheckResult(
            False,
            f"{int(hours - hours_since)} hours until trigger",
            scheduled_for=starts_at + timedelta(hours=hours),
        )
    return TriggerCheckResult(False, "Past trigger window")


def check_event_day_morning(ctx: TriggerContext, now: datetime, tz: tzinfo) -> TriggerCheckResult:
    if ctx.rsvp_status != RsvpStatus.ACCEPTED:
        return TriggerCheckResult(False, "Guest not confirmed")

    starts_at = as_utc(ctx.event_starts_at)
    local_now = now.astimezone(tz)
    local_start = starts_at.astimezone(tz)
    morning = local_start.replace(hour=EVENT_DAY_MORNING_HOUR, minute=0, second=0, microsecond=0)

    if local_now.date() != local_start.date():
        return TriggerCheckResult(False, "Not the event day", scheduled_for=morning if morning > local_now else None)
    if local_now.hour < EVENT_DAY_MORNING_HOUR:
        return TriggerCheckResult(False, "Too early on event day", scheduled_for=morning)
    if now >= starts_at:
        return TriggerCheckResult(False, "Event already started")
    return TriggerCheckResult(True, "Event day morning")


def check_day_after_morning(ctx: TriggerContext, now: datetime, tz: tzinfo) -> TriggerCheckResult:
    if ctx.rsvp_status != RsvpStatus.ACCEPTED:
        return TriggerCheckResult(False, "Guest not confirmed")

    local_now = now.astimezone(tz)
    day_after = as_utc(ctx.event_starts_at).astimezone(tz) + timedelta(days=1)
    morning = day_after.replace(hour=DAY_AFTER_MORNING_HOUR, minute=0, second=0, microsecond=0)

    if local_now.date() != day_after.date():
        return TriggerCheckResult(False, "Not the day after event", scheduled_for=morning if morning > local_now else None)
    if local_now.hour < DAY_AFTER_MORNING_HOUR:
        return TriggerCheckResult(False, "Too early on the day after event", scheduled_for=morning)
    return TriggerCheckResult(True, "Day after event morning")


def check_trigger_condition(
    trigger: str,
    ctx: TriggerContext,
    now: datetime,
    tz: tzinfo = timezone.utc
) -> TriggerCheckResult:
    """
    Decide whether a guest matches a flow's trigger at `now`.

    Args:
        trigger: FlowTrigger value
        ctx: Guest and event facts
        now: Current time (aware)
        tz: Local timezone for the morning triggers

    Returns:
        TriggerCheckResult; scheduled_for is set when the condition will become
        true later
    """
    now = as_utc(now)
    delay = ctx.delay_hours if ctx.delay_hours else DEFAULT_DELAY_HOURS.get(trigger)

    if trigger == FlowTrigger.NO_RESPONSE:
        return check_no_response(ctx, now, delay)
    if trigger == FlowTrigger.BEFORE_EVENT:
        return check_before_event(ctx, now, delay)
    if trigger == FlowTrigger.AFTER_EVENT:
        return check_after_event(ctx, now, delay)
    if trigger == FlowTrigger.EVENT_DAY_MORNING:
        return check_event_day_morning(ctx, now, tz)
    if trigger == FlowTrigger.DAY_AFTER_MORNING:
        return check_day_after_morning(ctx, now, tz)
    if trigger in FlowTrigger.EVENT_BASED:
        return TriggerCheckResult(False, "Fired on RSVP change, not on a schedule")
    return TriggerCheckResult(False, "Unknown trigger type")
