from datetime import date, datetime, timezone


class Clock:
    """Source of "now" for every sync component.

    Timestamps are naive UTC, matching how the tables store them.
    """

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def today(self) -> date:
        return self.now().date()
