from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from chapel.config import settings


APP_TIMEZONE = settings.app_timezone or "Africa/Lagos"
APP_ZONEINFO = ZoneInfo(APP_TIMEZONE)


class TimeProvider:
    def now(self) -> datetime:
        return datetime.now(APP_ZONEINFO)

    def today(self) -> date:
        return self.now().date()

    def utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    def utc_naive(self) -> datetime:
        return self.utc_now().replace(tzinfo=None)


class FixedTimeProvider(TimeProvider):
    """Frozen clock for tests and replays."""

    def __init__(self, moment: datetime) -> None:
        if moment.tzinfo is None or moment.tzinfo.utcoffset(moment) is None:
            raise ValueError("Naive datetime not allowed in business logic")
        self._moment = moment

    def now(self) -> datetime:
        return self._moment.astimezone(APP_ZONEINFO)

    def utc_now(self) -> datetime:
        return self._moment.astimezone(timezone.utc)


def iso_utc(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


default_time_provider = TimeProvider()
