from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Attach UTC to naive datetimes read back from the database (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(raw):
    """Parse an ISO-8601 string into an aware UTC datetime. Naive input is taken as UTC."""
    if isinstance(raw, datetime):
        return as_utc(raw)
    if not isinstance(raw, str) or not raw:
        raise ValueError('timestamp must be an ISO-8601 string')
    if raw.endswith('Z'):
        raw = raw[:-1] + '+00:00'
    return as_utc(datetime.fromisoformat(raw))
