# utilities/helpers.py

from datetime import datetime, timezone


def log_message(message, stream=None):
    """Log a timestamped message to the terminal or to a file-like stream if provided"""
    ts = datetime.now().strftime('%H:%M:%S')
    line = f"[{ts}] {message}"
    if stream is not None and hasattr(stream, 'write'):
        stream.write(line + "\n")
    else:
        print(line)


def utc_now():
    return datetime.now(timezone.utc)


def parse_timestamp(value):
    """Accept a datetime, an ISO-8601 string or epoch milliseconds; falls back to now."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return utc_now()
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return utc_now()


def recent_years(count=5, today=None):
    """The selectable years, newest first (current year and the previous ones)."""
    year = (today or datetime.now()).year
    return [year - i for i in range(count)]


def clamp(value, low, high):
    return max(low, min(value, high))
