"""Late-night activity: a transaction between midnight and 4am.

Account holders rarely transact in the small hours; card thieves and mule
operators often do, because the owner is asleep and won't see the SMS.
The hour is taken in UTC from the event timestamp.  Deployments in another
zone set ``utc_offset_hours``.
"""

from datetime import datetime, timezone

from fraud_detector.rules import Rule
from fraud_detector.window import EVENT, WindowSpec


class LateNightActivity(Rule):
    id = "late_night_activity"
    name = "Late-Night Transaction"
    severity = "low"
    score = 20.0
    cooldown_seconds = 3600.0
    dimension = "account_id"
    window = WindowSpec(EVENT)

    def __init__(self, params: dict | None = None):
        params = params or {}
        self.start_hour = int(params.get("start_hour", 0))
        self.end_hour = int(params.get("end_hour", 4))
        self.utc_offset_hours = float(params.get("utc_offset_hours", 0))
        self.configure(params)

    def match(self, event):
        return event.kind == "transaction"

    def check(self, event, reference):
        local = event.timestamp + self.utc_offset_hours * 3600
        hour = datetime.fromtimestamp(local, tz=timezone.utc).hour
        if not self.start_hour <= hour <= self.end_hour:
            return None
        return {
            "hour": hour,
            "amount": event.amount,
            "channel": event.get("channel"),
        }
