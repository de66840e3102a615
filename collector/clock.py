"""Civil-time helpers for Enedis metering data.

All day boundaries and off-peak windows are expressed in the meter timezone
(``METER_TZ``, Europe/Paris by default).
Date ranges are handled as half-open ``[start, end)`` so that a day is never
counted twice at a segment boundary.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from .config import settings
from .errors import ValidationError
from .models import OffpeakWindow

LOCAL_TZ = ZoneInfo(settings.tz)

# Enedis rejects load curve windows longer than this
MAX_WINDOW_DAYS = 7

DEFAULT_STEP_MINUTES = 30

ENEDIS_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_OFFPEAK_RE = re.compile(r"(\d{1,2})H(\d{2})\s*-\s*(\d{1,2})H(\d{2})", re.IGNORECASE)
_ISO_DURATION_RE = re.compile(r"PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?")

DateLike = Union[str, date]


@dataclass(frozen=True)
class Segment:
    """Half-open civil date window; ``end`` is exclusive."""

    start: date
    end: date

    @property
    def start_iso(self) -> str:
        return self.start.isoformat()

    @property
    def end_iso(self) -> str:
        return self.end.isoformat()

    @property
    def days(self) -> int:
        return (self.end - self.start).days


def to_civil_date(value: DateLike, tz: ZoneInfo = LOCAL_TZ) -> date:
    """Parse a civil date. Offset-aware timestamps are converted to ``tz`` first."""
    if isinstance(value, datetime):
        return value.astimezone(tz).date() if value.tzinfo else value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid date: {value!r}")
    text = value.strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid date: {value!r}")
    return parsed.astimezone(tz).date() if parsed.tzinfo else parsed.date()


def segment_range(start: DateLike, end_inclusive: DateLike, max_days: int = MAX_WINDOW_DAYS) -> List[Segment]:
    """Split an inclusive date range into consecutive windows of at most ``max_days``.

    The last window ends on the day after ``end_inclusive``. An inverted range
    gives no segments.
    """
    current = to_civil_date(start)
    end_exclusive = to_civil_date(end_inclusive) + timedelta(days=1)

    segments = []
    while current < end_exclusive:
        seg_end = min(current + timedelta(days=max_days), end_exclusive)
        segments.append(Segment(current, seg_end))
        current = seg_end
    return segments


def clamp_to_seven_days(start: DateLike, end_inclusive: DateLike) -> Tuple[str, str]:
    """Return ``(start_iso, end_exclusive_iso)`` truncated to a single 7-day window."""
    s = to_civil_date(start)
    end_exclusive = to_civil_date(end_inclusive) + timedelta(days=1)
    end_exclusive = min(end_exclusive, s + timedelta(days=MAX_WINDOW_DAYS))
    return s.isoformat(), end_exclusive.isoformat()


def parse_step_minutes(value) -> int:
    """Interval length in minutes from ``30``, ``"30"`` or ``"PT30M"``.

    Anything missing or unparseable falls back to 30 minutes.
    """
    if value is None or isinstance(value, bool):
        return DEFAULT_STEP_MINUTES
    if isinstance(value, (int, float)):
        minutes = int(value)
        return minutes if minutes > 0 else DEFAULT_STEP_MINUTES

    text = str(value).strip().upper()
    if text.isdigit():
        return int(text) or DEFAULT_STEP_MINUTES

    match = _ISO_DURATION_RE.fullmatch(text)
    if match and any(match.groups()):
        hours, minutes, seconds = (int(g) if g else 0 for g in match.groups())
        total = hours * 60 + minutes + seconds // 60
        if total > 0:
            return total
    return DEFAULT_STEP_MINUTES


def reconstruct_start(reported_end: str, duration=None, tz: ZoneInfo = LOCAL_TZ) -> Tuple[datetime, datetime]:
    """Turn an Enedis end-of-interval timestamp into ``(start, end)`` in ``tz``.

    The subtraction happens in UTC so that the interval keeps its real length
    across DST changes.
    """
    try:
        end = datetime.strptime(reported_end, ENEDIS_DATETIME_FORMAT).replace(tzinfo=tz)
    except (TypeError, ValueError):
        try:
            parsed = datetime.fromisoformat(str(reported_end).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid interval timestamp: {reported_end!r}")
        end = parsed.replace(tzinfo=tz) if parsed.tzinfo is None else parsed.astimezone(tz)

    step = parse_step_minutes(duration)
    start = (end.astimezone(timezone.utc) - timedelta(minutes=step)).astimezone(tz)
    return start, end.astimezone(tz)


def minute_of_day(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def slot_label(hour: int, minute: int) -> str:
    """Half-hour slot label ("HH:MM") containing the given time."""
    return f"{hour:02d}:{(minute // 30) * 30:02d}"


def half_hour_slots() -> List[str]:
    """The 48 slot labels of a day, "00:00" to "23:30"."""
    return [f"{hour:02d}:{minute:02d}" for hour in range(24) for minute in (0, 30)]


def classify_off_peak(minute: int, windows: Iterable[OffpeakWindow]) -> bool:
    """True when ``minute`` falls in any off-peak window. Window ends are exclusive."""
    for window in windows:
        if window.start < window.end:
            if window.start <= minute < window.end:
                return True
        elif minute >= window.start or minute < window.end:
            return True
    return False


def parse_offpeak_hours(text: Optional[str]) -> List[OffpeakWindow]:
    """Parse Enedis contract text such as ``"HC (22H00-6H00)"``."""
    if not text:
        return []
    return [
        OffpeakWindow(start=int(h1) * 60 + int(m1), end=int(h2) * 60 + int(m2))
        for h1, m1, h2, m2 in _OFFPEAK_RE.findall(text)
    ]


def coerce_offpeak_windows(raw) -> List[OffpeakWindow]:
    """Windows from a contract field: free text or a list of {start, end} minutes."""
    if isinstance(raw, str):
        return parse_offpeak_hours(raw)
    windows = []
    if isinstance(raw, list):
        for item in raw:
            if isinstance(item, OffpeakWindow):
                windows.append(item)
            elif isinstance(item, dict) and "start" in item and "end" in item:
                try:
                    windows.append(OffpeakWindow(start=int(item["start"]), end=int(item["end"])))
                except (TypeError, ValueError):
                    continue
            elif isinstance(item, str):
                windows.extend(parse_offpeak_hours(item))
    return windows
