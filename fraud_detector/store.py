"""Windowed aggregation store.

Holds the incremental aggregate for every live window key, sharded by a
stable hash of (dimension, value).  A shard owns its keys outright and has
its own lock, so updates to unrelated keys never contend; the only state
shared across shards is the event-time watermark and the redelivery cache,
which sit behind one short lock taken once per event.

Lateness is measured against the watermark (the highest event timestamp
applied so far), not the wall clock, so replays behave the same as live
traffic.
"""

import threading
import zlib
from collections import OrderedDict

import structlog

from fraud_detector import metrics
from fraud_detector.errors import DuplicateEvent, InvariantViolation, LateEventRejected
from fraud_detector.window import SESSION, TUMBLING, AggregateState

logger = structlog.get_logger()


def shard_index(dimension: str, value: str, shards: int) -> int:
    """Stable across processes, unlike hash() on str."""
    return zlib.crc32(f"{dimension}\x1f{value}".encode("utf-8")) % shards


class _Shard:
    __slots__ = ("lock", "windows")

    def __init__(self):
        self.lock = threading.Lock()
        self.windows: dict = {}


class AggregationStore:

    def __init__(
        self,
        router,
        shards: int = 16,
        max_lateness_seconds: float = 300.0,
        distinct_cap: int = 64,
        dedup_capacity: int = 100_000,
        retention_grace_seconds: float | None = None,
    ):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._router = router
        self._shards = [_Shard() for _ in range(shards)]
        self.max_lateness = max_lateness_seconds
        self.distinct_cap = distinct_cap
        self.retention_grace = (
            max_lateness_seconds if retention_grace_seconds is None else retention_grace_seconds
        )

        self._clock_lock = threading.Lock()
        self._watermark: float | None = None
        self._seen: OrderedDict = OrderedDict()
        self._dedup_capacity = dedup_capacity

    @property
    def router(self):
        return self._router

    @property
    def watermark(self) -> float | None:
        return self._watermark

    @property
    def shard_count(self) -> int:
        return len(self._shards)

    def shard_for(self, key) -> int:
        return shard_index(key.dimension, key.value, len(self._shards))

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def apply(self, event) -> list:
        """Fold one event into every window key it touches.

        Returns [(window_key, AggregateSnapshot), ...] in routing order.
        Raises DuplicateEvent for a redelivered event id and
        LateEventRejected for an event beyond the lateness bound; neither
        changes any state.
        """
        late = self._admit(event)
        if late:
            metrics.late_events_accepted_total.inc()
            logger.debug("late_event_accepted", event_id=event.event_id,
                         lag_seconds=round(self._watermark - event.timestamp, 3))

        updated = []
        for key, specs in self._router.route(event):
            shard = self._shards[self.shard_for(key)]
            with shard.lock:
                state = shard.windows.get(key)
                if state is not None and self._session_closed(key, state, event.timestamp):
                    # The gap ended the old session; this event opens a new one.
                    metrics.windows_evicted_total.labels(window=SESSION).inc()
                    logger.debug("session_closed", key=str(key), event_id=event.event_id,
                                 idle_seconds=round(event.timestamp - state.max_ts, 3))
                    state = AggregateState()
                    shard.windows[key] = state
                elif state is None:
                    state = AggregateState()
                    shard.windows[key] = state
                    metrics.windows_active.inc()
                state.add(event, specs, self.distinct_cap, late)
                try:
                    state.check()
                except InvariantViolation as e:
                    # Only this key is lost; the shard and its other keys carry on.
                    del shard.windows[key]
                    metrics.windows_active.dec()
                    metrics.shard_resets_total.inc()
                    logger.error("window_state_reset", key=str(key), event_id=event.event_id,
                                 error=str(e))
                    continue
                updated.append((key, state.snapshot()))
        return updated

    @staticmethod
    def _session_closed(key, state, timestamp: float) -> bool:
        if key.window.kind != SESSION or state.max_ts is None:
            return False
        return timestamp - state.max_ts >= key.window.size_seconds

    def _admit(self, event) -> bool:
        """Dedup + lateness gate.  Returns True if the event is late but accepted."""
        with self._clock_lock:
            if event.event_id in self._seen:
                raise DuplicateEvent(event.event_id)
            wm = self._watermark
            if wm is not None and event.timestamp < wm - self.max_lateness:
                raise LateEventRejected(event.event_id, event.timestamp, wm, self.max_lateness)

            self._seen[event.event_id] = event.timestamp
            if len(self._seen) > self._dedup_capacity:
                self._seen.popitem(last=False)

            if wm is None or event.timestamp > wm:
                self._watermark = event.timestamp
                return False
            return event.timestamp < wm

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self, key):
        """Current aggregate for *key*, or None if the key holds no state."""
        shard = self._shards[self.shard_for(key)]
        with shard.lock:
            state = shard.windows.get(key)
            return state.snapshot() if state is not None else None

    def keys(self) -> list:
        result = []
        for shard in self._shards:
            with shard.lock:
                result.extend(shard.windows)
        return result

    def __len__(self):
        return sum(len(shard.windows) for shard in self._shards)

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def deadline(self, key, state) -> float | None:
        """Event time at which *key* may be dropped; None means never."""
        window = key.window
        if window.kind == TUMBLING:
            return window.bucket_end(key.bucket) + self.retention_grace
        if window.kind == SESSION:
            return state.max_ts + window.size_seconds
        return None

    def evict(self, now: float) -> list:
        """Remove every key whose deadline is <= *now*.

        Returns [(window_key, final AggregateSnapshot), ...] sorted by key so
        close-time rule checks run in a stable order.
        """
        evicted = []
        for shard in self._shards:
            with shard.lock:
                expired = []
                for key, state in shard.windows.items():
                    deadline = self.deadline(key, state)
                    if deadline is not None and deadline <= now:
                        expired.append(key)
                for key in expired:
                    state = shard.windows.pop(key)
                    evicted.append((key, state.snapshot()))
        for key, _ in evicted:
            metrics.windows_active.dec()
            metrics.windows_evicted_total.labels(window=key.window.kind).inc()
        evicted.sort(key=lambda item: _sort_key(item[0]))
        return evicted


def _sort_key(key):
    return (key.dimension, key.value, key.window.name, key.bucket if key.bucket is not None else -1)
