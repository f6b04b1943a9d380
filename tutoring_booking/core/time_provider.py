from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo

from tutoring_booking.config import settings


APP_TIMEZONE = settings.app_timezone or "Asia/Kolkata"
APP_ZONEINFO = ZoneInfo(APP_TIMEZONE)


class TimeProvider:
    def now(self) -> datetime:
        return datetime.now(APP_ZONEINFO)

    def today(self) -> date:
        return self.now().date()

    def local_now(self) -> datetime:
        """Naive wall-clock time in the app timezone, the form slots are stored in."""
        return self.now().replace(tzinfo=None)


default_time_provider = TimeProvider()
