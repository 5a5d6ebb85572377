"""
Notification service for engine alerts.

The engine only hands AlertEvents to a channel; delivery is the channel's
business. A failing channel is logged and never breaks the caller.
"""

from typing import Dict, List, Optional
import logging
from standings_engine.models.schemas import AlertEvent

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class NotificationChannel:
    """Default channel: writes alerts to the log."""

    async def send(self, event: AlertEvent) -> None:
        level = _LOG_LEVELS.get(event.severity, logging.WARNING)
        logger.log(level, f"[ALERT] {event.title}: {event.message}")


class MemoryChannel(NotificationChannel):
    """Keeps alerts in memory (CLI summaries, tests)."""

    def __init__(self):
        self.events: List[AlertEvent] = []

    async def send(self, event: AlertEvent) -> None:
        self.events.append(event)


async def emit_alert(
    channel: Optional[NotificationChannel],
    severity: str,
    title: str,
    message: str,
    details: Optional[Dict] = None,
) -> Optional[AlertEvent]:
    """
    Build an AlertEvent and hand it to the channel.

    Args:
        channel: Target channel (None means the logging channel)
        severity: 'info', 'warning', 'error' or 'critical'
        title: Short alert title
        message: Alert message text
        details: Optional JSON metadata

    Returns:
        The event, or None if the channel failed
    """
    event = AlertEvent(severity=severity, title=title, message=message, details=details or {})
    try:
        await (channel or NotificationChannel()).send(event)
    except Exception as e:
        logger.warning(f"Failed to deliver alert '{title}': {e}")
        return None
    return event


async def alert_on_inconsistencies(channel: Optional[NotificationChannel], report) -> Optional[AlertEvent]:
    """Emit one critical alert when a validation report contains errors."""
    if not report.has_errors:
        return None
    types = sorted({i.type for i in report.errors})
    return await emit_alert(
        channel,
        "critical",
        "Standings inconsistencies detected",
        f"{report.error_count} errors ({', '.join(types)}) and {report.warning_count} warnings",
        {"types": types, "errors": report.error_count, "warnings": report.warning_count},
    )
