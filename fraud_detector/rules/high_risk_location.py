"""High-risk location: a transaction whose merchant city is on the watch list.

Covers the placeholder cities upstream systems write when geolocation fails
("Unknown") or when the acquirer is abroad ("Outside India").  The list
lives in reference data.
"""

from fraud_detector.errors import ReferenceDataUnavailable
from fraud_detector.rules import Rule
from fraud_detector.window import EVENT, WindowSpec


class HighRiskLocation(Rule):
    id = "high_risk_location"
    name = "High-Risk Transaction Location"
    severity = "medium"
    score = 35.0
    cooldown_seconds = 3600.0
    dimension = "account_id"
    window = WindowSpec(EVENT)

    def __init__(self, params: dict | None = None):
        self.configure(params)

    def match(self, event):
        return event.kind == "transaction" and event.get("merchant_city") is not None

    def check(self, event, reference):
        if reference is None:
            raise ReferenceDataUnavailable("no reference data configured")
        city = event.get("merchant_city")
        if not reference.is_high_risk_city(city):
            return None
        return {
            "merchant_city": city,
            "merchant_country": event.get("merchant_country"),
            "amount": event.amount,
        }
