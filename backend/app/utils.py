# Utility functions
from datetime import date, datetime, timezone, timedelta

IST = timezone(timedelta(hours=5, minutes=30))


def get_ist_time():
    """Get current IST time"""
    return datetime.now(timezone.utc).astimezone(IST)


def to_ist(ts: datetime) -> datetime:
    """Convert an aware datetime to IST; naive values are assumed to be UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(IST)


def ist_date_key(ts: datetime | None = None) -> str:
    """Calendar date bucket (YYYY-MM-DD) in exchange time."""
    return (to_ist(ts) if ts is not None else get_ist_time()).strftime("%Y-%m-%d")


def parse_date_key(key: str) -> date:
    return datetime.strptime(key, "%Y-%m-%d").date()


def is_market_open(now: datetime | None = None):
    """Check if market is open (9:15 AM - 3:30 PM IST, Monday-Friday)"""
    from config import config as _config
    if _config.get('bypass_market_hours', False):
        return True

    ist = to_ist(now) if now is not None else get_ist_time()

    # Monday=0 to Friday=4, Saturday=5, Sunday=6
    if ist.weekday() >= 5:
        return False

    market_open = ist.replace(hour=9, minute=15, second=0, microsecond=0)
    market_close = ist.replace(hour=15, minute=30, second=0, microsecond=0)
    return market_open <= ist <= market_close
