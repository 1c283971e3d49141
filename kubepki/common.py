import datetime as dt
from typing import Optional

def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)

def iso_utc(d: dt.datetime) -> str:
    if d.tzinfo is None:
        d = d.replace(tzinfo=dt.timezone.utc)
    return d.astimezone(dt.timezone.utc).isoformat().replace("+00:00", "Z")

def days_until(ts: dt.datetime, now: Optional[dt.datetime] = None) -> int:
    now = now or utc_now()
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=dt.timezone.utc)
    delta = ts - now
    return int(delta.total_seconds() // 86400)

def to_epoch(d: Optional[dt.datetime]) -> Optional[int]:
    """Ledger timestamps are whole seconds since the epoch, UTC."""
    if d is None:
        return None
    if d.tzinfo is None:
        d = d.replace(tzinfo=dt.timezone.utc)
    return int(d.timestamp())

def from_epoch(value: Optional[int]) -> Optional[dt.datetime]:
    if value is None:
        return None
    return dt.datetime.fromtimestamp(int(value), tz=dt.timezone.utc)
