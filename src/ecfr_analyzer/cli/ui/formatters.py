"""
Output formatting utilities
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from rich.text import Text


def format_timestamp(dt: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Format timestamp for display"""
    if dt is None:
        return "never"
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    diff = now - dt

    if diff < timedelta(0):
        return dt.strftime("%Y-%m-%d %H:%M")
    elif diff < timedelta(seconds=60):
        return f"{int(diff.total_seconds())}s ago"
    elif diff < timedelta(hours=1):
        return f"{int(diff.total_seconds() // 60)}m ago"
    elif diff < timedelta(days=1):
        return f"{int(diff.total_seconds() // 3600)}h ago"
    elif diff < timedelta(days=7):
        return f"{diff.days}d ago"
    else:
        return dt.strftime("%Y-%m-%d")


def format_duration_ms(milliseconds: Any) -> str:
    """Format an accumulated run time given in milliseconds"""
    if not milliseconds:
        return "-"
    seconds = int(milliseconds) // 1000
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


_STATUS_COLORS = {
    "running": "green",
    "in_progress": "green",
    "completed": "cyan",
    "stopped": "white",
    "pending": "yellow",
    "pending_start": "yellow",
    "pending_stop": "yellow",
    "pending_restart": "yellow",
    "failed": "red",
    "cancelled": "magenta",
}


def format_status(status: Optional[str]) -> Text:
    """Format job or thread status with color coding"""
    if not status:
        return Text("unknown", style="white")
    return Text(status, style=_STATUS_COLORS.get(status, "white"))


def format_progress(progress: Optional[dict]) -> str:
    if not progress:
        return "-"
    return (
        f"{progress.get('current', 0)}/{progress.get('total', 0)} "
        f"({progress.get('percentage', 0)}%)"
    )
