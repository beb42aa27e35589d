"""
US equity market-hours gate (regular session, weekdays 9:30-16:00 ET).

No holiday calendar: a weekday holiday reads as open.
"""

from datetime import datetime, time as dtime
from typing import Callable, Optional

import pytz

EASTERN = pytz.timezone("US/Eastern")

RTH_OPEN = dtime(9, 30)
RTH_CLOSE = dtime(16, 0)


class MarketHours:

    def __init__(self, open_time: dtime = RTH_OPEN, close_time: dtime = RTH_CLOSE,
                 clock: Optional[Callable[[], datetime]] = None):
        self.open_time = open_time
        self.close_time = close_time
        self._clock = clock or (lambda: datetime.now(pytz.UTC))

    def is_open(self, now: Optional[datetime] = None) -> bool:
        """True during the regular session on a weekday."""
        moment = now or self._clock()
        if moment.tzinfo is None:
            moment = pytz.UTC.localize(moment)
        local = moment.astimezone(EASTERN)
        if local.weekday() >= 5:
            return False
        return self.open_time <= local.time() < self.close_time
