"""
Dashboard and daily analytics aggregation.

Both functions work on a StoreSnapshot, so they see one consistent view of
the store no matter what writers do meanwhile.
"""

import logging
import math
from datetime import date, datetime, timedelta, timezone

from whatsapp_bot.schemas import AnalyticsCreate, CommandStat, DashboardStats, MessageRecord
from whatsapp_bot.storage import StoreSnapshot

logger = logging.getLogger(__name__)


RECENT_MESSAGES_LIMIT = 10
COMMAND_STATS_LIMIT = 5

COMMAND_DESCRIPTIONS = {
    "help": "Show available commands",
    "info": "Company information",
    "contact": "Contact information",
    "order": "Order status check",
}


def command_description(command_name: str) -> str:
    return COMMAND_DESCRIPTIONS.get(command_name, "Custom command")


def _round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def _utc_day(moment: datetime) -> date:
    return moment.astimezone(timezone.utc).date()


def _messages_on(snapshot: StoreSnapshot, day: date) -> list[MessageRecord]:
    return [msg for msg in snapshot.messages if _utc_day(msg.timestamp) == day]


def _average_response_time(messages: list[MessageRecord]) -> int:
    times = [
        msg.response_time
        for msg in messages
        if msg.status == "responded" and msg.response_time is not None
    ]
    if not times:
        return 0
    return int(_round_half_up(sum(times) / len(times)))


def _command_counts(messages: list[MessageRecord]) -> dict[str, int]:
    # dict keeps first-occurrence order of each command
    counts: dict[str, int] = {}
    for msg in messages:
        if msg.is_command and msg.command_name:
            counts[msg.command_name] = counts.get(msg.command_name, 0) + 1
    return counts


def compute_dashboard(
    snapshot: StoreSnapshot,
    now: datetime,
    active_window_hours: int = 24,
) -> DashboardStats:
    """
    Compute dashboard metrics as of now.

    "Today" is now's UTC calendar day. Active users use a sliding window of
    active_window_hours ending at now. Command stats keep the order in which
    each command was first seen today and are capped at five entries; they
    are not ranked by usage.
    """
    today_messages = _messages_on(snapshot, _utc_day(now))
    responded = [msg for msg in today_messages if msg.status == "responded"]

    if today_messages:
        response_rate = _round_half_up(len(responded) / len(today_messages) * 100, 1)
    else:
        response_rate = 0

    window_start = now - timedelta(hours=active_window_hours)
    active_users = len({
        conv.phone_number
        for conv in snapshot.conversations
        if conv.is_active and conv.last_message_at > window_start
    })

    # stable sort keeps snapshot (insertion) order for equal timestamps
    recent_messages = sorted(snapshot.messages, key=lambda msg: msg.timestamp)[::-1][:RECENT_MESSAGES_LIMIT]

    command_stats = [
        CommandStat(name=f"/{name}", usage=usage, description=command_description(name))
        for name, usage in _command_counts(today_messages).items()
    ][:COMMAND_STATS_LIMIT]

    logger.debug(
        f"Dashboard: {len(today_messages)} messages today, {active_users} active users"
    )

    return DashboardStats(
        messages_today=len(today_messages),
        active_users=active_users,
        response_rate=response_rate,
        avg_response_time=_average_response_time(responded),
        recent_messages=recent_messages,
        command_stats=command_stats,
    )


def build_daily_analytics(snapshot: StoreSnapshot, day: date) -> AnalyticsCreate:
    """
    Roll one UTC day of messages up into an analytics row.

    Active users here are the distinct senders of that day; popular commands
    are ranked by usage, ties keeping first-seen order.
    """
    day_messages = _messages_on(snapshot, day)
    counts = _command_counts(day_messages)
    popular = sorted(counts, key=lambda name: counts[name], reverse=True)[:COMMAND_STATS_LIMIT]

    return AnalyticsCreate(
        date=day.isoformat(),
        messages_received=len(day_messages),
        messages_responded=sum(1 for msg in day_messages if msg.status == "responded"),
        active_users=len({msg.from_number for msg in day_messages}),
        avg_response_time=_average_response_time(day_messages),
        command_usage=counts,
        popular_commands=popular,
    )
