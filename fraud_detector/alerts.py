"""Alert lifecycle: creation, deduplication, cooldown and status changes.

One alert per (rule, key identity) may be non-terminal at a time.  Repeat
firings fold into it (max score wins, last-triggered advances) instead of
opening duplicates.  After an alert reaches a terminal status, the next
firing opens a fresh alert, unless the rule's cooldown has not yet run out.
Cooldown is event time, counted from the last firing that was published
(creation or update).  Investigator transitions and notes are stamped with
the wall clock and never restart it.

Status machine:

    open ──> investigating ──> closed
      │                   └──> false_positive
      ├──> closed
      └──> false_positive

closed and false_positive are terminal; only audit notes may be added.

Locking is per identity and independent of the aggregation store's shard
locks, so alert writes never hold up aggregate updates.
"""

import copy
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

import structlog

from fraud_detector import metrics
from fraud_detector.errors import AlertNotFound, InvalidTransition

logger = structlog.get_logger()


class AlertStatus(str, Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    CLOSED = "closed"
    FALSE_POSITIVE = "false_positive"

    @property
    def terminal(self) -> bool:
        return self in (AlertStatus.CLOSED, AlertStatus.FALSE_POSITIVE)


_TRANSITIONS = {
    AlertStatus.OPEN: {AlertStatus.INVESTIGATING, AlertStatus.CLOSED, AlertStatus.FALSE_POSITIVE},
    AlertStatus.INVESTIGATING: {AlertStatus.CLOSED, AlertStatus.FALSE_POSITIVE},
    AlertStatus.CLOSED: set(),
    AlertStatus.FALSE_POSITIVE: set(),
}


class MutationKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SUPPRESSED = "suppressed"


@dataclass
class AuditNote:
    at: float
    actor: str
    notes: str
    status_from: str | None = None
    status_to: str | None = None


@dataclass
class Alert:
    alert_id: str
    rule_id: str
    rule_name: str
    severity: str
    dimension: str
    key_value: str
    window: str
    score: float
    first_triggered: float
    last_triggered: float
    status: AlertStatus = AlertStatus.OPEN
    trigger_count: int = 1
    trigger_event_ids: list = field(default_factory=list)
    evidence: dict = field(default_factory=dict)
    account_id: str | None = None
    investigator: str | None = None
    closed_at: float | None = None
    notes: list = field(default_factory=list)
    version: int = 1
    last_published: float | None = None
    cooldown_seconds: float = 0.0

    @property
    def identity(self) -> tuple:
        return (self.rule_id, self.dimension, self.key_value, self.window)

    def copy(self) -> "Alert":
        return copy.deepcopy(self)

    def to_record(self, mutation: str) -> dict:
        """Sink payload.  (alert_id, version) makes redelivery idempotent."""
        return {
            "alert_id": self.alert_id,
            "version": self.version,
            "mutation": mutation,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "severity": self.severity,
            "dimension": self.dimension,
            "key": self.key_value,
            "window": self.window,
            "account_id": self.account_id,
            "status": self.status.value,
            "score": self.score,
            "first_triggered": self.first_triggered,
            "last_triggered": self.last_triggered,
            "trigger_count": self.trigger_count,
            "trigger_event_ids": list(self.trigger_event_ids),
            "evidence": self.evidence,
            "investigator": self.investigator,
            "closed_at": self.closed_at,
            "notes": [vars(n) for n in self.notes],
        }


@dataclass(frozen=True)
class AlertMutation:
    kind: MutationKind
    alert: Alert

    @property
    def created(self) -> bool:
        return self.kind is MutationKind.CREATED


class AlertManager:

    def __init__(self, dispatcher=None, max_trigger_refs: int = 20, clock=time.time):
        self._dispatcher = dispatcher
        self._max_refs = max_trigger_refs
        self._clock = clock
        self._alerts: dict = {}
        self._latest: dict = {}  # identity -> alert_id of the newest alert
        self._locks: dict = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, identity) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(identity)
            if lock is None:
                lock = self._locks[identity] = threading.Lock()
            return lock

    @contextmanager
    def _identity_lock(self, identity):
        # prune() may retire a lock while another thread waits on it; the
        # waiter then starts over with the identity's current lock.
        while True:
            lock = self._lock_for(identity)
            lock.acquire()
            if self._locks.get(identity) is lock:
                break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    # ------------------------------------------------------------------
    # Rule firings
    # ------------------------------------------------------------------

    def on_trigger(self, result) -> AlertMutation:
        identity = result.identity
        with self._identity_lock(identity):
            current = self._alerts.get(self._latest.get(identity))

            if current is not None and not current.status.terminal:
                current.score = max(current.score, result.score)
                current.last_triggered = max(current.last_triggered, result.timestamp)
                current.trigger_count += 1
                current.evidence = result.evidence
                current.cooldown_seconds = result.cooldown_seconds
                self._remember(current, result.event_id)
                if self._cooling(current, result):
                    kind = MutationKind.SUPPRESSED
                else:
                    kind = MutationKind.UPDATED
                    current.version += 1
                    current.last_published = result.timestamp
                    self._publish(current, kind.value)
                alert = current

            elif current is not None and self._cooling(current, result):
                kind = MutationKind.SUPPRESSED
                alert = current

            else:
                kind = MutationKind.CREATED
                alert = self._create(result)
                self._publish(alert, kind.value)

            snapshot = alert.copy()

        metrics.alert_mutations_total.labels(rule_id=result.rule_id, mutation=kind.value).inc()
        if kind is MutationKind.CREATED:
            logger.warning("alert_created", alert_id=snapshot.alert_id, rule_id=result.rule_id,
                           key=str(result.key), score=snapshot.score, severity=snapshot.severity)
        else:
            logger.debug("alert_" + kind.value, alert_id=snapshot.alert_id,
                         rule_id=result.rule_id, trigger_count=snapshot.trigger_count)
        return AlertMutation(kind, snapshot)

    def _create(self, result) -> Alert:
        alert = Alert(
            alert_id=str(uuid.uuid4()),
            rule_id=result.rule_id,
            rule_name=result.rule_name,
            severity=result.severity,
            dimension=result.key.dimension,
            key_value=result.key.value,
            window=result.key.window.name,
            score=result.score,
            first_triggered=result.timestamp,
            last_triggered=result.timestamp,
            evidence=result.evidence,
            account_id=result.account_id,
            last_published=result.timestamp,
            cooldown_seconds=result.cooldown_seconds,
        )
        self._remember(alert, result.event_id)
        self._alerts[alert.alert_id] = alert
        self._latest[result.identity] = alert.alert_id
        return alert

    def _remember(self, alert: Alert, event_id: str | None) -> None:
        if event_id is None:
            return
        alert.trigger_event_ids.append(event_id)
        if len(alert.trigger_event_ids) > self._max_refs:
            del alert.trigger_event_ids[0]

    @staticmethod
    def _cooling(alert: Alert, result) -> bool:
        if result.cooldown_seconds <= 0 or alert.last_published is None:
            return False
        return result.timestamp - alert.last_published < result.cooldown_seconds

    # ------------------------------------------------------------------
    # Investigator actions
    # ------------------------------------------------------------------

    def transition(self, alert_id: str, new_status, actor: str, notes: str = "") -> Alert:
        """Move an alert to *new_status*.

        Raises AlertNotFound for an unknown id and InvalidTransition (leaving
        the alert untouched) for a move the status machine forbids.
        """
        alert = self._get(alert_id)
        with self._identity_lock(alert.identity):
            try:
                target = AlertStatus(new_status)
            except ValueError:
                raise InvalidTransition(alert_id, alert.status.value, str(new_status)) from None
            if target not in _TRANSITIONS[alert.status]:
                raise InvalidTransition(alert_id, alert.status.value, target.value)

            now = self._clock()
            alert.notes.append(AuditNote(now, actor, notes, alert.status.value, target.value))
            alert.status = target
            alert.investigator = actor
            if target.terminal:
                alert.closed_at = now
            alert.version += 1
            self._publish(alert, "transitioned")
            snapshot = alert.copy()

        metrics.alert_transitions_total.labels(status=target.value).inc()
        logger.info("alert_transitioned", alert_id=alert_id, status=target.value, actor=actor)
        return snapshot

    def add_note(self, alert_id: str, actor: str, notes: str) -> Alert:
        """Append an audit note.  Allowed in every status, terminal included."""
        alert = self._get(alert_id)
        with self._identity_lock(alert.identity):
            alert.notes.append(AuditNote(self._clock(), actor, notes))
            alert.version += 1
            self._publish(alert, "noted")
            return alert.copy()

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def prune(self, now: float) -> int:
        """Forget terminal alerts whose cooldown ran out by event time *now*.

        Nothing a future firing checks is lost: an identity whose newest
        alert is terminal and past its cooldown would open a fresh alert
        anyway.  The sink keeps the published history.  Returns the number
        of alerts dropped.
        """
        pruned = []
        with self._locks_guard:
            for alert in list(self._alerts.values()):
                if not self._expired(alert, now):
                    continue
                identity = alert.identity
                lock = self._locks.get(identity)
                if lock is not None and not lock.acquire(blocking=False):
                    continue  # busy; next sweep
                try:
                    if not self._expired(alert, now):
                        continue
                    del self._alerts[alert.alert_id]
                    if self._latest.get(identity) == alert.alert_id:
                        del self._latest[identity]
                        self._locks.pop(identity, None)
                    pruned.append(alert.alert_id)
                finally:
                    if lock is not None:
                        lock.release()

        if pruned:
            logger.info("alerts_pruned", count=len(pruned), now=now, remaining=len(self._alerts))
        return len(pruned)

    @staticmethod
    def _expired(alert: Alert, now: float) -> bool:
        if not alert.status.terminal:
            return False
        published = alert.last_published
        if published is None:
            published = alert.last_triggered
        return now - published >= alert.cooldown_seconds

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, alert_id: str) -> Alert:
        return self._get(alert_id).copy()

    def find(self, rule_id: str, dimension: str, value: str, window: str) -> Alert | None:
        """Newest alert for an identity, terminal or not."""
        alert_id = self._latest.get((rule_id, dimension, str(value), window))
        return self._alerts[alert_id].copy() if alert_id is not None else None

    def alerts(self, rule_id: str | None = None) -> list:
        found = [a for a in self._alerts.values() if rule_id is None or a.rule_id == rule_id]
        return [a.copy() for a in sorted(found, key=lambda a: (a.first_triggered, a.alert_id))]

    def open_alerts(self) -> list:
        return [a for a in self.alerts() if not a.status.terminal]

    def __len__(self):
        return len(self._alerts)

    def _get(self, alert_id: str) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise AlertNotFound(alert_id)
        return alert

    def _publish(self, alert: Alert, mutation: str) -> None:
        if self._dispatcher is not None:
            self._dispatcher.submit(alert.to_record(mutation))
