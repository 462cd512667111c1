"""Error taxonomy for the fraud detector.

Every error the engine raises on purpose derives from FraudDetectorError so
service loops can catch one type per event and keep going.  Where a builtin
already describes the failure (ValueError, LookupError, KeyError) the error
inherits it too, so callers that only know the builtin still work.
"""


class FraudDetectorError(Exception):
    """Base class for all detector errors."""


class MalformedEvent(FraudDetectorError, ValueError):
    """Raw event could not be parsed into an Event."""


class LateEventRejected(FraudDetectorError):
    """Event is older than the watermark minus the allowed lateness.

    The event is not applied.  Callers log it and count it so dropped-late
    volume can be audited.
    """

    def __init__(self, event_id: str, timestamp: float, watermark: float, max_lateness: float):
        self.event_id = event_id
        self.timestamp = timestamp
        self.watermark = watermark
        self.max_lateness = max_lateness
        super().__init__(
            f"event {event_id} at {timestamp:.3f} is {watermark - timestamp:.1f}s "
            f"behind watermark {watermark:.3f} (max lateness {max_lateness:.0f}s)"
        )


class DuplicateEvent(FraudDetectorError):
    """Event id was already applied; redelivery is a no-op."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"event {event_id} already applied")


class ReferenceDataUnavailable(FraudDetectorError, LookupError):
    """Reference lookup failed; the dependent per-event rule is skipped."""


class InvalidTransition(FraudDetectorError):
    """Alert status change not allowed by the lifecycle state machine."""

    def __init__(self, alert_id: str, current: str, requested: str):
        self.alert_id = alert_id
        self.current = current
        self.requested = requested
        super().__init__(f"alert {alert_id}: cannot move from {current} to {requested}")


class AlertNotFound(FraudDetectorError, KeyError):
    """No alert with the given id."""


class SinkUnavailable(FraudDetectorError):
    """External alert sink rejected or could not accept a write."""


class InvariantViolation(FraudDetectorError):
    """Aggregate state for a window key is internally inconsistent."""
