"""High-risk merchant: a transaction at a merchant in a cash-like category.

The merchant category code comes from the event when the source sends it,
otherwise from reference data.  The alert is keyed by merchant so the
investigator sees one case per merchant, with the latest paying account in
the evidence.
"""

from fraud_detector.errors import ReferenceDataUnavailable
from fraud_detector.rules import Rule
from fraud_detector.window import EVENT, WindowSpec


class HighRiskMerchant(Rule):
    id = "high_risk_merchant"
    name = "High-Risk Merchant Category"
    severity = "medium"
    score = 40.0
    cooldown_seconds = 3600.0
    dimension = "merchant_id"
    window = WindowSpec(EVENT)

    def __init__(self, params: dict | None = None):
        self.configure(params)

    def match(self, event):
        return event.kind == "transaction" and event.get("merchant_id") is not None

    def check(self, event, reference):
        if reference is None:
            raise ReferenceDataUnavailable("no reference data configured")
        mcc = event.get("mcc")
        if mcc is None:
            mcc = reference.merchant(event.get("merchant_id")).get("mcc")
        if mcc is None or not reference.is_high_risk_mcc(mcc):
            return None
        return {
            "mcc": mcc,
            "account_id": event.get("account_id"),
            "amount": event.amount,
        }
