"""Typed events for the detector.

Transactions and logins share one envelope: an id, a kind, an event-time
timestamp (epoch seconds, UTC), the subject keys the event can be grouped
by, and a free-form payload.  Rules read fields through Event.get() so a
subject key, a payload field and the derived ``hour`` look the same to them.

parse_event() accepts both the normalised field names and the names used by
the core banking tables (transaction_id, txn_timestamp, transaction_type,
card_number_hash, login_time, device_info, ...), so raw rows can be replayed
without a mapping step.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

from fraud_detector.errors import MalformedEvent

TRANSACTION = "transaction"
LOGIN = "login"
ALERT = "alert"
KINDS = (TRANSACTION, LOGIN, ALERT)

# Fields an event can be grouped by.  Every window key is built from one.
DIMENSIONS = (
    "account_id",
    "customer_id",
    "card_id",
    "card_hash",
    "merchant_id",
    "ip_address",
    "device_id",
)

# Source-schema name -> normalised name.
_KEY_ALIASES = {
    "card_number_hash": "card_hash",
    "device_info": "device_id",
}
_PAYLOAD_ALIASES = {
    "transaction_type": "type",
    "merchant_category_code": "mcc",
}
_ID_FIELDS = ("event_id", "transaction_id", "login_id")
_TS_FIELDS = ("timestamp", "txn_timestamp", "login_time")

_FLOAT_FIELDS = ("amount", "risk_score")
_PAYLOAD_FIELDS = (
    "amount",
    "currency",
    "type",
    "status",
    "channel",
    "merchant_city",
    "merchant_country",
    "mcc",
    "success",
    "location",
    "risk_score",
    "rule_id",
)


@dataclass(frozen=True)
class Event:
    event_id: str
    kind: str
    timestamp: float
    keys: Mapping[str, str] = field(default_factory=dict)
    payload: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Events are facts; freeze the mappings so no rule can edit them.
        object.__setattr__(self, "keys", MappingProxyType(dict(self.keys)))
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    @property
    def hour(self) -> int:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc).hour

    @property
    def amount(self) -> float | None:
        return self.payload.get("amount")

    def get(self, name: str, default=None):
        """Look up a subject key, envelope field, derived field or payload field."""
        if name in self.keys:
            return self.keys[name]
        if name in ("event_id", "kind", "timestamp", "hour"):
            return getattr(self, name)
        return self.payload.get(name, default)

    def with_keys(self, **keys) -> "Event":
        """Return a copy with extra subject keys (used for enrichment)."""
        merged = dict(self.keys)
        merged.update({k: str(v) for k, v in keys.items() if v is not None})
        return replace(self, keys=merged)

    def with_payload(self, **fields) -> "Event":
        merged = dict(self.payload)
        merged.update({k: v for k, v in fields.items() if v is not None})
        return replace(self, payload=merged)


def parse_event(raw: Mapping[str, Any]) -> Event:
    """Build an Event from a raw dict (Kafka message, DB row, test fixture).

    Raises MalformedEvent when the id, kind or timestamp is missing or
    unusable, or when a numeric field is not numeric.
    """
    if not isinstance(raw, Mapping):
        raise MalformedEvent(f"event must be a mapping, got {type(raw).__name__}")

    kind = raw.get("kind") or raw.get("event_type")
    if kind is None:
        if "transaction_id" in raw:
            kind = TRANSACTION
        elif "login_id" in raw:
            kind = LOGIN
    if kind not in KINDS:
        raise MalformedEvent(f"unknown event kind: {kind!r}")

    event_id = _first(raw, _ID_FIELDS)
    if event_id is None or event_id == "":
        raise MalformedEvent("event has no id")
    event_id = str(event_id)

    ts = _first(raw, _TS_FIELDS)
    if ts is None:
        raise MalformedEvent(f"event {event_id} has no timestamp")
    timestamp = parse_timestamp(ts, event_id)

    keys = {}
    for name, value in raw.items():
        name = _KEY_ALIASES.get(name, name)
        if name in DIMENSIONS and value is not None and value != "":
            keys[name] = str(value)

    payload = {}
    for name, value in raw.items():
        name = _PAYLOAD_ALIASES.get(name, name)
        if name not in _PAYLOAD_FIELDS or value is None:
            continue
        if name in _FLOAT_FIELDS:
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise MalformedEvent(f"event {event_id}: {name} is not numeric: {value!r}")
        elif name == "success":
            value = _parse_bool(value)
        elif name == "mcc":
            value = str(value)
        payload[name] = value

    return Event(event_id=event_id, kind=kind, timestamp=timestamp, keys=keys, payload=payload)


def parse_timestamp(value, event_id: str = "?") -> float:
    """Epoch seconds from a number, a numeric string, a datetime or ISO-8601.

    Naive datetimes are taken as UTC.
    """
    if isinstance(value, bool):
        raise MalformedEvent(f"event {event_id}: bad timestamp {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise MalformedEvent(f"event {event_id}: bad timestamp {value!r}")
    else:
        raise MalformedEvent(f"event {event_id}: bad timestamp {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def alert_event(alert_id: str, rule_id: str, account_id: str, timestamp: float) -> Event:
    """Internal event emitted when an alert opens on an account."""
    return Event(
        event_id=f"alert:{alert_id}",
        kind=ALERT,
        timestamp=timestamp,
        keys={"account_id": account_id},
        payload={"rule_id": rule_id},
    )


def _first(raw, names):
    for name in names:
        if raw.get(name) is not None:
            return raw[name]
    return None


def _parse_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "t", "yes", "y")
    return bool(value)
