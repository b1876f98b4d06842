"""
Timezone utilities with rate-limited logging.

All persisted timestamps are ISO-8601 UTC strings with millisecond precision
and a ``Z`` suffix, e.g. ``2026-02-26T10:00:00.000Z``.
"""
from datetime import datetime, timezone
from zoneinfo import ZoneInfo
from typing import Optional
from collections import defaultdict
import time
import structlog

logger = structlog.get_logger()


class RateLimitedLogger:
    """Rate-limited logger to reduce log chatter for repeated warnings."""
    
    def __init__(self, cooldown_seconds: int = 60):
        self.cooldown_seconds = cooldown_seconds
        self.last_log_time = defaultdict(float)
        self.suppressed_count = defaultdict(int)
    
    def log_if_allowed(self, key: str, log_func, *args, **kwargs):
        """Log message only if cooldown period has passed."""
        now = time.time()
        last_time = self.last_log_time[key]
        
        if now - last_time >= self.cooldown_seconds:
            if self.suppressed_count[key] > 0:
                logger.info(
                    f"Suppressed {self.suppressed_count[key]} similar messages in last {self.cooldown_seconds}s",
                    message_key=key
                )
                self.suppressed_count[key] = 0
            
            log_func(*args, **kwargs)
            self.last_log_time[key] = now
        else:
            self.suppressed_count[key] += 1


_tz_logger = RateLimitedLogger(cooldown_seconds=60)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime, tz_name: str = "UTC") -> datetime:
    """
    Ensure datetime is timezone-aware.
    
    Naive datetimes are localized to ``tz_name``; aware ones are returned as-is.
    
    Raises:
        ValueError: If datetime is None
    """
    if dt is None:
        raise ValueError("Cannot ensure timezone awareness for None datetime")
    
    if dt.tzinfo is not None:
        return dt
    
    _tz_logger.log_if_allowed(
        "naive_datetime",
        logger.warning,
        "Naive datetime auto-localized",
        dt=dt.isoformat(),
        tz=tz_name
    )
    return dt.replace(tzinfo=ZoneInfo(tz_name))


def to_utc(dt: datetime) -> datetime:
    """
    Convert datetime to UTC timezone.
    
    Raises:
        ValueError: If datetime is naive (no timezone info)
    """
    if dt is None:
        raise ValueError("Cannot convert None datetime to UTC")
    
    if dt.tzinfo is None:
        raise ValueError(
            f"Cannot convert naive datetime to UTC: {dt}. "
            "Use ensure_aware() first to localize to a timezone."
        )
    
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize an aware datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    return to_utc(ensure_aware(dt)).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime; None if unparseable."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return to_utc(ensure_aware(parsed))


def format_age(iso_date: str, now: Optional[datetime] = None) -> str:
    """Human age of a timestamp: ``12m ago``, ``3h ago``, ``2d ago``."""
    then = parse_iso(iso_date)
    if then is None:
        return "unknown"
    now = now or utc_now()
    minutes = int((now - then).total_seconds() // 60)
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"

