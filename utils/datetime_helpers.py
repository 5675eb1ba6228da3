"""
Datetime helper utilities to ensure consistent timezone handling.

All ledger tables use timezone-naive UTC datetimes (DateTime(timezone=False)).
Chain sources report unix seconds; these helpers normalise everything to the
stored representation.
"""

from datetime import datetime, timezone
from typing import Optional, Union
import logging

logger = logging.getLogger(__name__)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes are shifted to UTC and stripped; naive ones are assumed UTC already"""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def get_naive_utc_now() -> datetime:
    """Current UTC time as naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix_timestamp(value: Optional[Union[int, float]]) -> Optional[datetime]:
    """Convert unix seconds reported by the node or explorer to naive UTC"""
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning(f"⚠️ Ignoring unparseable unix timestamp: {value!r}")
        return None


def to_epoch_millis(dt: datetime) -> int:
    """Milliseconds since epoch for a naive UTC datetime"""
    return int(ensure_naive_datetime(dt).replace(tzinfo=timezone.utc).timestamp() * 1000)
