"""Reference data lookups used by per-event rules and event enrichment.

The system of record for merchants, accounts and watch lists lives outside
the detector.  ReferenceData is the read-only view the engine needs;
StaticReferenceData serves it from memory (a YAML export, or dicts in
tests).  A lookup that can't be answered raises ReferenceDataUnavailable
and the caller skips whatever depended on it.
"""

from pathlib import Path

import yaml

from fraud_detector.errors import ReferenceDataUnavailable

# Cash-like categories flagged by the monitoring team.
DEFAULT_HIGH_RISK_MCCS = ("5411", "5814", "4111")
# Placeholder cities written when geolocation fails or the acquirer is foreign.
DEFAULT_HIGH_RISK_CITIES = ("Unknown", "Outside India")


class ReferenceData:

    def merchant(self, merchant_id) -> dict:
        """{"mcc": ..., "city": ..., "country": ...} for a merchant."""
        raise NotImplementedError

    def customer_for_account(self, account_id) -> str:
        raise NotImplementedError

    def is_high_risk_mcc(self, mcc) -> bool:
        raise NotImplementedError

    def is_high_risk_city(self, city) -> bool:
        raise NotImplementedError


class StaticReferenceData(ReferenceData):

    def __init__(
        self,
        merchants: dict | None = None,
        accounts: dict | None = None,
        high_risk_mccs=DEFAULT_HIGH_RISK_MCCS,
        high_risk_cities=DEFAULT_HIGH_RISK_CITIES,
    ):
        self._merchants = {str(k): dict(v) for k, v in (merchants or {}).items()}
        self._accounts = {str(k): str(v) for k, v in (accounts or {}).items()}
        self._mccs = frozenset(str(m) for m in high_risk_mccs)
        self._cities = frozenset(c.strip().lower() for c in high_risk_cities)

    @classmethod
    def from_yaml(cls, path: str | Path, **defaults) -> "StaticReferenceData":
        """Load from a YAML file with optional ``merchants``, ``accounts``,
        ``high_risk_mccs`` and ``high_risk_cities`` sections."""
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path.name}: reference data must be a mapping")
        kwargs = dict(defaults)
        for field in ("merchants", "accounts", "high_risk_mccs", "high_risk_cities"):
            if field in data:
                kwargs[field] = data[field]
        return cls(**kwargs)

    def merchant(self, merchant_id):
        try:
            return self._merchants[str(merchant_id)]
        except KeyError:
            raise ReferenceDataUnavailable(f"unknown merchant {merchant_id}") from None

    def customer_for_account(self, account_id):
        try:
            return self._accounts[str(account_id)]
        except KeyError:
            raise ReferenceDataUnavailable(f"unknown account {account_id}") from None

    def is_high_risk_mcc(self, mcc):
        return str(mcc) in self._mccs

    def is_high_risk_city(self, city):
        return city is not None and str(city).strip().lower() in self._cities
