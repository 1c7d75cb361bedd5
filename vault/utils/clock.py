from datetime import datetime, date, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utctoday() -> date:
    return utcnow().date()


def as_utc(dt: datetime) -> datetime:
    """sqlite отдаёт naive datetime, postgres - aware; приводим к aware UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
