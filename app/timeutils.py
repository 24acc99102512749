from __future__ import annotations

from datetime import datetime, timezone

ERP_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_erp_datetime(value: str | datetime) -> datetime:
    """Parse an ERP timestamp. Bare "YYYY-MM-DD HH:MM:SS" values are UTC."""
    if isinstance(value, datetime):
        return as_utc(value)
    raw = value.strip()
    try:
        return datetime.strptime(raw, ERP_DATETIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    return as_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))


def format_erp_datetime(value: datetime) -> str:
    return as_utc(value).strftime(ERP_DATETIME_FORMAT)


def format_diff_minutes(minutes: int) -> str:
    """Render a minute count as "1h 30m", "2h" or "45m"."""
    minutes = abs(int(minutes))
    hours, remainder = divmod(minutes, 60)
    if hours and remainder:
        return f"{hours}h {remainder}m"
    if hours:
        return f"{hours}h"
    return f"{remainder}m"
